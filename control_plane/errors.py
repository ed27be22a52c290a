import enum


class ErrorCode(str, enum.Enum):
    VALIDATION_REJECTED = "VALIDATION_REJECTED"
    TERMINAL_STATE_VIOLATION = "TERMINAL_STATE_VIOLATION"
    GOVERNANCE_REQUIRED = "GOVERNANCE_REQUIRED"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"  # CAS precondition failed; reread and retry
    STORE_ERROR = "STORE_ERROR"
    STORE_TIMEOUT = "STORE_TIMEOUT"


RETRYABLE = frozenset({ErrorCode.CONFLICT, ErrorCode.STORE_TIMEOUT})


class StoreError(Exception):
    """Persistence failure. The driver exception is kept as ``__cause__``."""

    code = ErrorCode.STORE_ERROR

    def __init__(self, operation: str, message: str):
        super().__init__(f"{operation}: {message}")
        self.operation = operation


class StoreTimeoutError(StoreError):
    code = ErrorCode.STORE_TIMEOUT
