# dmrelay protocol constants (numeric keys and limits)

# Envelope keys
K_TO = 0
K_FROM = 1
K_BODY = 2
K_ERROR = 3

# Limits are UTF-8 byte lengths. They keep a hostile client from making the
# relay allocate arbitrary amounts of memory per request.
MAX_NAME_LEN = 32
MAX_MESSAGE_LEN = 2048

# Upper bound for one encoded envelope on the wire. Comfortably above the
# largest valid envelope (two names, a full body and CBOR headers).
MAX_ENVELOPE_BYTES = 4096

# Handshake: one unsigned length byte followed by the raw name bytes.
HELLO_LEN_BYTES = 1

ROUTER_QUEUE_SIZE = 256

ERR_NAME_TAKEN = "Username is taken"
ERR_NOT_CONNECTED = "'{name}' is not connected"
