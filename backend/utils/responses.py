from fastapi.responses import JSONResponse

from services.errors import EntitlementError, TrialNotEligible


def success_response(data=None, message="OK", status=200):
    return JSONResponse(
        status_code=status,
        content={
            "ok": True,
            "data": data if data is not None else {},
            "error": None,
            "message": message,
        }
    )


def error_response(error_code, status=400, message="An error occurred", data=None):
    return JSONResponse(
        status_code=status,
        content={
            "ok": False,
            "data": data if data is not None else {},
            "error": error_code,
            "message": message,
        }
    )


def entitlement_error_response(exc: EntitlementError):
    """Envelope for a domain error; eligibility refusals carry their reason."""
    data = {}
    if isinstance(exc, TrialNotEligible):
        data["reason"] = exc.reason
    return error_response(exc.code, status=exc.status_code, message=str(exc), data=data)
