REDIS_META_KEY = "watchparty:meta:{slug}" # room id - hash
REDIS_MESSAGES_KEY = "watchparty:messages:{slug}" # room id - capped list of chat messages (json)
REDIS_INVITE_KEY = "watchparty:invite:{slug}:{user_id}" # room id + invitee - invite json with TTL

# **Example `watchparty:meta:{id}` hash fields**
# - `room_id` = `{roomId}`
# - `room_name` = display name
# - `movie_id` = integer
# - `host_id` = user id of the host
# - `max_participants` = integer
# - `is_active` = true / false
# - `created_at` = ISO timestamp
# - `ended_at` = ISO timestamp (set when the host ends the party)
