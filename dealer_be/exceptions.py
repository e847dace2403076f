from dealer_be.error_codes import ErrorCodes

class AppException(Exception):
    def __init__(self, error_code, status_message, status_code, details=None, action_button=None):
        super().__init__(status_message)
        self.error_code = error_code
        self.status_message = status_message
        self.status_code = status_code
        self.details = details if details is not None else {}
        self.action_button = action_button if action_button is not None else {}

class ValidationException(AppException):
    def __init__(self, status_message="Validation failed", details=None, action_button=None):
        super().__init__(
            error_code=ErrorCodes.VALIDATION_ERROR,
            status_message=status_message,
            status_code=422,
            details=details,
            action_button=action_button
        )

class AuthenticationException(AppException):
    def __init__(self, status_message="Authentication required", details=None, action_button=None):
        super().__init__(
            error_code=ErrorCodes.UNAUTHENTICATED,
            status_message=status_message,
            status_code=401,
            details=details,
            action_button=action_button
        )

class NotFoundException(AppException):
    def __init__(self, status_message="Resource not found", details=None, action_button=None):
        super().__init__(
            error_code=ErrorCodes.NOT_FOUND,
            status_message=status_message,
            status_code=404,
            details=details,
            action_button=action_button
        )

class StateConflictException(AppException):
    """A lifecycle command arrived in a state that does not permit it. Nothing was mutated."""
    def __init__(self, status_message="Command not allowed in current round state", details=None, action_button=None):
        super().__init__(
            error_code=ErrorCodes.STATE_CONFLICT,
            status_message=status_message,
            status_code=409,
            details=details,
            action_button=action_button
        )

class DecodeFailureException(AppException):
    """The reader produced a code the decoder does not know."""
    def __init__(self, status_message="Unknown card code", details=None, action_button=None):
        super().__init__(
            error_code=ErrorCodes.DECODE_FAILURE,
            status_message=status_message,
            status_code=422,
            details=details,
            action_button=action_button
        )

class ModeForbiddenException(AppException):
    def __init__(self, status_message="Dealer commands are disabled in passive mode", details=None, action_button=None):
        super().__init__(
            error_code=ErrorCodes.MODE_FORBIDDEN,
            status_message=status_message,
            status_code=403,
            details=details,
            action_button=action_button
        )

class UpstreamUnavailableException(AppException):
    def __init__(self, status_message="Game server unavailable", details=None, action_button=None):
        super().__init__(
            error_code=ErrorCodes.UPSTREAM_UNAVAILABLE,
            status_message=status_message,
            status_code=503,
            details=details,
            action_button=action_button
        )

class UpstreamRejectedException(AppException):
    """The game server answered with a non-zero ecode."""
    def __init__(self, status_message="Game server rejected the command", details=None, action_button=None):
        super().__init__(
            error_code=ErrorCodes.UPSTREAM_REJECTED,
            status_message=status_message,
            status_code=502,
            details=details,
            action_button=action_button
        )

class PersistenceFailureException(AppException):
    def __init__(self, status_message="Failed to persist record", details=None, action_button=None):
        super().__init__(
            error_code=ErrorCodes.PERSISTENCE_FAILURE,
            status_message=status_message,
            status_code=500,
            details=details,
            action_button=action_button
        )
