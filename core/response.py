from fastapi import HTTPException


def ok(data=None):
    """Standard success envelope."""
    return {"ok": True, "data": data, "error": None}


def error(code: str = "internal_error", message: str = "An internal error occurred", details=None):
    """Standard error envelope."""
    body = {"code": code, "message": message}
    if details is not None:
        body["details"] = details
    return {"ok": False, "data": None, "error": body}


def raise_for_result(result):
    """
    Convert a service result into an HTTP error when it carries one.

    Services return a dict with 'error' and 'status_code' for business
    conflicts (full bus, duplicate application, ...); anything else passes through.
    """
    if isinstance(result, dict) and result.get("status_code", 200) >= 400:
        raise HTTPException(status_code=result["status_code"], detail=result.get("error", "Request failed"))
    return result
