# RGC protocol constants (numeric keys and message types)

RGC_VERSION = 1

# Envelope keys
K_V = 0
K_T = 1
K_ID = 2
K_TS = 3
K_REPLY = 4
K_BODY = 5

# Message types
T_LOGIN = 1
T_RECONNECT = 2
T_RESPONSE = 3
T_COMMAND = 4

T_CHAT = 20
T_HISTORY = 21
T_USER_JOINED = 22
T_USER_LEFT = 23
T_ONLINE = 24
T_MUTED_STATUS = 25
T_ADMIN_STATUS = 26

T_PING = 30
T_PONG = 31

T_ERROR = 40

T_RESOURCE_ENVELOPE = 50

# LOGIN / RECONNECT body keys
B_LOGIN_USER = 0
B_LOGIN_PASS = 1
B_LOGIN_TOKEN = 2

# RESPONSE body keys
B_RESP_OK = 0
B_RESP_REASON = 1
B_RESP_TEXT = 2
B_RESP_DATA = 3

# CHAT body keys. Clients send TOKEN/TEXT/IMAGE/QUOTE/MENTIONS; the hub
# broadcasts the stored message with USER/TS/ID filled in and no token.
B_MSG_TOKEN = 0
B_MSG_TEXT = 1
B_MSG_IMAGE = 2
B_MSG_QUOTE = 3
B_MSG_MENTIONS = 4
B_MSG_USER = 5
B_MSG_TS = 6
B_MSG_ID = 7

# Quoted message snapshot keys
B_QUOTE_USER = 0
B_QUOTE_TEXT = 1

# COMMAND body keys
B_CMD_NAME = 0
B_CMD_TOKEN = 1
B_CMD_ARGS = 2

# MUTED_STATUS / ADMIN_STATUS body keys
B_STATUS_USER = 0
B_STATUS_VALUE = 1

# RESOURCE_ENVELOPE body keys
B_RES_ID = 0
B_RES_KIND = 1
B_RES_SIZE = 2
B_RES_SHA256 = 3
B_RES_ENCODING = 4
B_RES_NAME = 5

# Resource kinds (string values)
RES_KIND_IMAGE = "image"
RES_KIND_ENVELOPE = "envelope"

# Machine-checkable rejection reasons carried in RESPONSE bodies.
R_VALIDATION = "validation"
R_BAD_CREDENTIALS = "bad_credentials"
R_INVALID_CREDENTIAL = "invalid_credential"
R_NOT_AUTHORIZED = "not_authorized"
R_FORBIDDEN = "forbidden"
R_ALREADY_ONLINE = "already_online"
R_USERNAME_TAKEN = "username_taken"
R_CODE_EXISTS = "code_exists"
R_CONFLICT = "conflict"
R_INVALID_CODE = "invalid_code"
R_MUTED = "muted"
R_NOT_ONLINE = "not_online"
R_NOT_AUTHENTICATED = "not_authenticated"
R_ALREADY_AUTHENTICATED = "already_authenticated"
R_NOT_FOUND = "not_found"
R_STORAGE = "storage"
R_RATE_LIMITED = "rate_limited"
R_INTERNAL = "internal"

# Leaderboard windows
WINDOW_DAY = "day"
WINDOW_WEEK = "week"
WINDOW_MONTH = "month"
LEADERBOARD_WINDOWS = (WINDOW_DAY, WINDOW_WEEK, WINDOW_MONTH)

USERNAME_MAX_CHARS = 32
