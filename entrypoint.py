import uvicorn
import os
from constants import LOG_LEVEL, LOG_FILE
from logging_config import setup_logging

# Setup logging before importing app
setup_logging(log_level=LOG_LEVEL, log_file=LOG_FILE)

from app import app
from logging_config import get_logger

logger = get_logger(__name__)

if __name__ == "__main__":
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", 8000))
    reload = os.getenv("RELOAD", "false").lower() == "true"
    logger.info(f"Starting Watch Party server on {host}:{port}")
    # Room state lives in process memory: one worker per deployment
    uvicorn.run("app:app" if reload else app, host=host, port=port, reload=reload, workers=1)
