from fastapi import HTTPException

from control_plane.errors import ErrorCode
from control_plane.services.transitions import ApplyResult

_STATUS = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.CONFLICT: 409,
    ErrorCode.GOVERNANCE_REQUIRED: 403,
    ErrorCode.VALIDATION_REJECTED: 422,
    ErrorCode.TERMINAL_STATE_VIOLATION: 422,
    ErrorCode.STORE_TIMEOUT: 503,
    ErrorCode.STORE_ERROR: 500,
}


def apply_response(result: ApplyResult) -> dict:
    body = {
        "ok": result.success,
        "from": result.from_state,
        "to": result.to_state,
        "gate_requirements": list(result.gate_requirements),
    }
    if result.success:
        return body
    raise HTTPException(
        status_code=_STATUS.get(result.code, 500),
        detail={
            **body,
            "code": result.code.value if result.code else None,
            "error": result.error,
            "requires_approval": result.requires_approval,
            "retryable": result.retryable,
        },
    )
