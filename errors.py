class WatchPartyError(Exception):
    """Base class for watch party errors. `code` is sent to hub clients."""

    code = "WatchPartyError"

    def __init__(self, room_id: str, message: str = None):
        self.room_id = room_id
        super().__init__(message or f"{self.code}: {room_id}")


class Unauthorized(WatchPartyError):
    code = "Unauthorized"


class RoomNotFound(WatchPartyError):
    code = "RoomNotFound"


class RoomFull(WatchPartyError):
    code = "RoomFull"


class InvalidPlaybackState(WatchPartyError):
    code = "InvalidPlaybackState"
