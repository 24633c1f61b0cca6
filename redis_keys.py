REDIS_ROOM_KEY = "room:state:{slug}" # room id - full room document (JSON string)

# **Example `room:state:{id}` document**
# - `id` = `{roomId}`
# - `settings` = durations + control mode
# - `timer` = running/phase/phaseEndsAt/remainingSecWhenPaused/cycleCount/lastUpdatedAt
# - `participants`, `messages`, `userTodos`, `history`
# The key TTL is refreshed on every write (ROOM_TTL_SECONDS).
