import os
import secrets
import threading
import time
from collections import defaultdict
from typing import Iterable, Optional, Tuple

from flask import current_app, jsonify, request, send_from_directory
from werkzeug.security import safe_join

from .errors import ForbiddenError, TooManyRequestsError

CSRF_COOKIE_NAME = "csrfToken"
CSRF_HEADER_NAMES = ("X-CSRF-Token", "X-XSRF-Token")
SAFE_METHODS = {"GET", "HEAD", "OPTIONS"}


def issue_csrf_token():
    token = secrets.token_hex(32)
    response = jsonify({"csrfToken": token})
    response.set_cookie(
        CSRF_COOKIE_NAME,
        token,
        httponly=True,
        samesite="Lax",
        secure=current_app.config.get("CSRF_COOKIE_SECURE", False),
        path="/",
    )
    return response


def csrf_protect() -> None:
    """Double-submit check for cookie-authenticated, state-changing requests.

    Bearer-token requests and requests without a refresh-token cookie cannot be
    forged cross-site and pass through.
    """
    if request.method in SAFE_METHODS:
        return

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return

    refresh_cookie_name = current_app.config.get("REFRESH_TOKEN_COOKIE", "refreshToken")
    if not request.cookies.get(refresh_cookie_name):
        return

    csrf_cookie = request.cookies.get(CSRF_COOKIE_NAME)
    csrf_header = next(
        (request.headers.get(name) for name in CSRF_HEADER_NAMES if request.headers.get(name)),
        None,
    )
    if not csrf_cookie or not csrf_header or not secrets.compare_digest(
        csrf_cookie, csrf_header
    ):
        raise ForbiddenError("Invalid CSRF token")


class RateLimiter:
    """Sliding-window request counter keyed by client address (in-process only)."""

    def __init__(
        self,
        max_requests: int = 60,
        window_seconds: int = 60,
        exempt_prefixes: Iterable[str] = (),
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.exempt_prefixes = tuple(exempt_prefixes)
        self._hits = defaultdict(list)
        self._lock = threading.Lock()

    def hit(self, identifier: str, now: Optional[float] = None) -> Tuple[bool, int]:
        """Record a request; return ``(allowed, retry_after_seconds)``."""
        current_time = time.time() if now is None else now
        with self._lock:
            hits = self._hits[identifier]
            hits[:] = [stamp for stamp in hits if current_time - stamp < self.window_seconds]
            if len(hits) >= self.max_requests:
                retry_after = int(hits[0] + self.window_seconds - current_time) + 1
                return False, max(retry_after, 1)
            hits.append(current_time)
            return True, 0

    def reset(self, identifier: Optional[str] = None) -> None:
        with self._lock:
            if identifier is None:
                self._hits.clear()
            else:
                self._hits.pop(identifier, None)

    def check_request(self) -> None:
        if request.path.startswith(self.exempt_prefixes):
            return
        allowed, retry_after = self.hit(request.remote_addr or "unknown")
        if not allowed:
            raise TooManyRequestsError(retry_after)


def serve_public_file(base_dir: str):
    """Serve ``request.path`` from ``base_dir`` when such a file exists.

    Paths escaping ``base_dir`` are refused with 403; anything that is not an
    existing file falls through to the routes.
    """
    if request.method not in ("GET", "HEAD"):
        return None

    relative_path = request.path.lstrip("/")
    if not relative_path:
        return None

    resolved = safe_join(base_dir, relative_path)
    if resolved is None:
        raise ForbiddenError("Forbidden")
    if not os.path.isfile(resolved):
        return None
    return send_from_directory(base_dir, relative_path)
