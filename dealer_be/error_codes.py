class ErrorCodes:
    # Generic
    GENERIC_ERROR = "BE_GEN_000"
    INTERNAL_SERVER_ERROR = "BE_GEN_001"
    NOT_FOUND = "BE_GEN_002"
    METHOD_NOT_ALLOWED = "BE_GEN_003"
    VALIDATION_ERROR = "BE_GEN_004"
    UNAUTHENTICATED = "BE_GEN_005"
    FORBIDDEN = "BE_GEN_006"

    # Round lifecycle
    STATE_CONFLICT = "BE_RND_001"
    DECODE_FAILURE = "BE_RND_002"
    MODE_FORBIDDEN = "BE_RND_003"

    # Upstream game server
    UPSTREAM_UNAVAILABLE = "BE_UPS_001"
    UPSTREAM_REJECTED = "BE_UPS_002"

    # Store
    PERSISTENCE_FAILURE = "BE_DB_001"
