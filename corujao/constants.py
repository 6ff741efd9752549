# Corujão wire protocol constants (envelope keys, event types, close codes)

PROTOCOL_VERSION = 1

# Envelope keys
K_V = "v"
K_T = "t"
K_ID = "id"
K_TS = "ts"
K_ROOM = "room"
K_BODY = "body"

# Client -> server events
T_LOGIN = "login"
T_JOIN_ROOM = "join_room"
T_LEAVE_ROOM = "leave_room"
T_SEND_MESSAGE = "send_message"
T_PONG = "pong"

CLIENT_EVENTS = frozenset({T_LOGIN, T_JOIN_ROOM, T_LEAVE_ROOM, T_SEND_MESSAGE, T_PONG})

# Server -> client events
T_SYSTEM_MESSAGE = "system_message"
T_CHAT_MESSAGE = "chat_message"
T_ROOM_LIST = "room_list"
T_USER_LIST = "user_list"
T_RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
T_AUTH_ERROR = "auth_error"
T_PREVIOUS_MESSAGES = "previous_messages"
T_CLEAR_SCREEN = "clear_screen"
T_ACK = "ack"
T_ERROR = "error"
T_PING = "ping"

# system_message kinds
SYS_WELCOME = "welcome"
SYS_NOTICE = "notice"
SYS_JOIN = "join"
SYS_LEAVE = "leave"
SYS_ROOM_CHANGE = "room_change"
SYS_ANNOUNCEMENT = "announcement"
SYS_DURABILITY = "durability"

# Rate gate scopes
SCOPE_CONNECT = "connect"
SCOPE_MESSAGE = "message"
SCOPE_AUTH = "auth"

# WebSocket close codes
CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_PROTOCOL_ERROR = 1002
CLOSE_POLICY_VIOLATION = 1008
CLOSE_TOO_BIG = 1009
CLOSE_SERVER_ERROR = 1011

# Roles
ROLE_USER = "user"
ROLE_ADMIN = "admin"
ROLES = (ROLE_USER, ROLE_ADMIN)

USERNAME_MIN_CHARS = 3
USERNAME_MAX_CHARS = 20
PASSWORD_MIN_CHARS = 6
PASSWORD_MAX_CHARS = 72  # bcrypt only looks at the first 72 bytes

SESSION_COOKIE = "corujao_session"
