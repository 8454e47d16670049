"""Standard response envelopes."""
from typing import Any, List, Optional


def api_response(data: Any = None, message: str = "Success", status_code: int = 200) -> dict:
    return {"statusCode": status_code, "data": data, "message": message, "success": True}


def error_body(status_code: int, message: str, errors: Optional[List[Any]] = None) -> dict:
    return {"statusCode": status_code, "message": message, "errors": errors or [], "success": False}
