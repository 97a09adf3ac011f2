PROTOCOL_VERSION = "1.0"

ERROR_CODES = {
    "ERROR": 1,
    "INVALID_INPUT": 2,
    "NOT_FOUND": 3,
    "SPAWN_FAILED": 4,
    "EXEC_FAILED": 5,
    "TIMEOUT": 6,
    "BRIDGE_UNAVAILABLE": 7,
}
