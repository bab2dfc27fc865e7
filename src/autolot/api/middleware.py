import re
import time
import logging
from uuid import uuid4
from fastapi import Request
from fastapi.responses import JSONResponse
from autolot.config import settings

logger = logging.getLogger("autolot.api")

_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")
UPLOAD_PATH = "/imports/uploads"


async def add_request_id(request: Request, call_next):
    # Only short token-like ids are echoed back and logged.
    supplied = request.headers.get("x-request-id", "")
    rid = supplied if _REQUEST_ID.match(supplied) else uuid4().hex
    request.state.request_id = rid
    response = await call_next(request)
    response.headers["x-request-id"] = rid
    return response


def body_limit(path: str) -> tuple[int, str]:
    """Byte cap for a request body: feed uploads get the upload cap, everything else is a JSON payload."""
    security = settings.security
    if path.rstrip("/") == UPLOAD_PATH:
        return security.max_upload_mb * 1024 * 1024, f"{security.max_upload_mb}MB"
    return security.max_json_kb * 1024, f"{security.max_json_kb}KB"


async def enforce_body_size(request: Request, call_next):
    declared = request.headers.get("content-length", "")
    if not declared.isdigit():
        return await call_next(request)
    limit_bytes, label = body_limit(request.url.path)
    if int(declared) > limit_bytes:
        logger.warning(
            "request body rejected",
            extra={"path": request.url.path, "content_length": int(declared), "limit": label},
        )
        return JSONResponse(
            status_code=413,
            content={
                "error": "request_too_large",
                "detail": f"Max body size for {request.url.path} is {label}",
                "request_id": getattr(request.state, "request_id", None),
            },
        )
    return await call_next(request)


async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = None
    try:
        response = await call_next(request)
        return response
    finally:
        status = getattr(response, "status_code", 500)
        logger.log(
            logging.WARNING if status >= 500 else logging.INFO,
            "request",
            extra={
                "method": request.method,
                "path": request.url.path,
                "dealer_id": request.query_params.get("dealer_id"),
                "status": status,
                "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                "request_id": getattr(request.state, "request_id", None),
            },
        )
