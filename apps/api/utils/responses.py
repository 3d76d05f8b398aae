"""Success envelope: ``{"status": "success", "message"?, "data", "pagination"?}``"""
from typing import Any, Optional


def success(data: Any = None, message: Optional[str] = None, pagination: Optional[dict] = None) -> dict:
    body = {"status": "success"}
    if message is not None:
        body["message"] = message
    body["data"] = data
    if pagination is not None:
        body["pagination"] = pagination
    return body
