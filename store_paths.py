BROADCASTER_PATH = "signaling/broadcaster" # single presence record of the active broadcaster
VIEWERS_PATH = "signaling/viewers" # collection of viewer liveness records
VIEWER_PATH = "signaling/viewers/{viewer_id}" # viewer id
TEMP_PATH = "signaling/temp" # scratch node, only used to mint push keys
LINKS_PATH = "livestreams/links" # ordered playlist collection
LINK_PATH = "livestreams/links/{key}" # push key
ONLINE_PATH = "livestreams/online" # existence means a session is live
MESSAGES_PATH = "messages/broadcasterToViewers" # reserved, cleared on stop

# **Example `signaling/broadcaster` record**
# - `id` = broadcaster id (a minted push key)
# - `started` = true
# - `lastPing` = store time in ms, refreshed every heartbeat

# **Example `livestreams/online` record**
# - `started` = true
# - `startedAt` = store time in ms
# - `broadcasterId` = id of the broadcaster that opened the session

# **Example `livestreams/links/{key}` record**
# - `url` = the link as typed by the broadcaster
# - `videoId` = 11 character video id
# - `addedAt` = store time in ms
