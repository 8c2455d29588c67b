"""Constants for the Supabase backend."""

REST_URI = "/rest/v1"
AUTH_URI = "/auth/v1"
REALTIME_URI = "/realtime/v1/websocket"

SIGNUP_ENDPOINT = "/signup"
TOKEN_ENDPOINT = "/token"
LOGOUT_ENDPOINT = "/logout"

GRANT_PASSWORD = "password"
GRANT_REFRESH_TOKEN = "refresh_token"

APIKEY_HEADER = "apikey"
PREFER_HEADER = "Prefer"
RETURN_REPRESENTATION = "return=representation"

DEFAULT_HEADERS = {
    "Accept": "application/json",
    "User-Agent": "pysmartparking",
}

REALTIME_VSN = "1.0.0"
REALTIME_SCHEMA = "public"
HEARTBEAT_INTERVAL = 25.0
# Seconds to wait before each reconnect attempt; the last value repeats.
RECONNECT_DELAYS = (1.0, 2.0, 5.0, 10.0)
PHOENIX_TOPIC = "phoenix"

EVENT_JOIN = "phx_join"
EVENT_LEAVE = "phx_leave"
EVENT_REPLY = "phx_reply"
EVENT_ERROR = "phx_error"
EVENT_CLOSE = "phx_close"
EVENT_HEARTBEAT = "heartbeat"
EVENT_POSTGRES_CHANGES = "postgres_changes"
EVENT_ACCESS_TOKEN = "access_token"

# Refresh the session this many seconds before the access token expires.
EXPIRY_MARGIN = 60
