# reservations_service/rate_limiter.py
import os
import time
from typing import Any, Dict, List

from fastapi import Depends, HTTPException, Request, status

from .auth import get_current_user_claims

# Sliding windows: N requests / WINDOW seconds
WINDOW_SECONDS = 60
MAX_WRITES_PER_WINDOW = int(os.getenv("MAX_WRITES_PER_WINDOW", "20"))
MAX_ANONYMOUS_PER_WINDOW = int(os.getenv("MAX_ANONYMOUS_PER_WINDOW", "10"))

_request_log: Dict[str, List[float]] = {}


def _hit(key: str, limit: int, detail: str) -> None:
    now = time.time()
    window_start = now - WINDOW_SECONDS

    timestamps = [ts for ts in _request_log.get(key, []) if ts >= window_start]
    if len(timestamps) >= limit:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=detail,
        )

    timestamps.append(now)
    _request_log[key] = timestamps


def write_rate_limiter(claims: Dict[str, Any] = Depends(get_current_user_claims)):
    """
    Rate limit reservation writes per authenticated user.
    """
    # Skip rate limiting completely in automated tests
    if os.getenv("TESTING") == "1":
        return
    _hit(
        f"user:{claims['user_id']}",
        MAX_WRITES_PER_WINDOW,
        "Too many reservation operations in a short time",
    )


def ip_rate_limiter(request: Request):
    """
    Rate limit unauthenticated endpoints (register, login) by client IP + path.
    """
    if os.getenv("TESTING") == "1":
        return
    client_ip = request.client.host if request.client else "unknown"
    _hit(
        f"ip:{client_ip}:{request.url.path}",
        MAX_ANONYMOUS_PER_WINDOW,
        "Too many requests from this IP, please slow down",
    )


def reset() -> None:
    _request_log.clear()
