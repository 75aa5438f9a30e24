REDIS_ROOM_CHANNEL = "room:channel:{room_address}" # room address - pub/sub channel name

# **Pub/Sub envelope**
# - `event` = server->client event name (message, userTyping, ...)
# - `data` = event payload, already in wire shape
# - `exclude` = connection id that must not receive it (typing events), or null
