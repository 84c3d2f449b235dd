# crelay protocol constants (numeric keys and event types)

CRELAY_VERSION = 1

# Envelope keys
K_V = 0
K_T = 1
K_ID = 2
K_TS = 3
K_SRC = 4
K_BODY = 5

# Inbound events
T_IDENTIFY = 1
T_REQUEST_CONTACTS = 2

T_ACCEPT_INVITE = 10
T_DELETE_CONTACT = 11
T_CREATE_GROUP = 12
T_DELETE_GROUP = 13

T_SEND_MESSAGE = 20
T_FETCH_HISTORY = 21
T_FETCH_GROUP_HISTORY = 22

# Outbound events
T_WELCOME = 3

T_UPDATE_CONTACTS = 30
T_NEW_CONTACT = 31
T_CONTACT_DELETED = 32
T_GROUP_CREATED = 33
T_GROUP_DELETED = 34

T_RECEIVE_MESSAGE = 40
T_HISTORY = 41
T_GROUP_HISTORY = 42

T_ERROR = 50

# Either direction
T_RESOURCE_ENVELOPE = 60

EVENT_NAMES: dict[int, str] = {
    T_IDENTIFY: "identify",
    T_REQUEST_CONTACTS: "request-contacts",
    T_ACCEPT_INVITE: "accept-invite",
    T_DELETE_CONTACT: "delete-contact",
    T_CREATE_GROUP: "create-group",
    T_DELETE_GROUP: "delete-group",
    T_SEND_MESSAGE: "send-message",
    T_FETCH_HISTORY: "fetch-history",
    T_FETCH_GROUP_HISTORY: "fetch-group-history",
    T_WELCOME: "welcome",
    T_UPDATE_CONTACTS: "update-contacts",
    T_NEW_CONTACT: "new-contact",
    T_CONTACT_DELETED: "contact-deleted",
    T_GROUP_CREATED: "group-created",
    T_GROUP_DELETED: "group-deleted",
    T_RECEIVE_MESSAGE: "receive-message",
    T_HISTORY: "history",
    T_GROUP_HISTORY: "group-history",
    T_ERROR: "group-error",
    T_RESOURCE_ENVELOPE: "resource-envelope",
}

# RESOURCE_ENVELOPE body keys
B_RES_ID = "id"
B_RES_SIZE = "size"
B_RES_SHA256 = "sha256"

# Error codes carried in group-error bodies
E_INVALID = "invalid-request"
E_NOT_FOUND = "not-found"
E_FORBIDDEN = "forbidden"
E_CONFLICT = "conflict"
E_PERSISTENCE = "persistence-failure"
E_INTERNAL = "internal"
E_RATE_LIMITED = "rate-limited"
