"""
Request timing middleware.

Every API response carries ``X-Request-ID`` and ``X-Request-Duration-Ms``.
Slow requests (``SLOW_REQUEST_MS``, default 1000) log a warning and 5xx
responses log an error, tagged with the calling user from ``X-User``.
"""

import logging
import time
import uuid

from flask import Flask, g, request

logger = logging.getLogger(__name__)

_QUIET_PATHS = frozenset({"/api/v1/health/live", "/api/v1/health/ready"})


def init_request_timing(app: Flask):
    """Register before/after hooks for request timing."""
    slow_ms = float(app.config.get("SLOW_REQUEST_MS", 1000))

    @app.before_request
    def _start_timer():
        g.request_start = time.perf_counter()
        g.request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:12]

    @app.after_request
    def _log_request(response):
        start = getattr(g, "request_start", None)
        if start is None:
            return response

        duration_ms = (time.perf_counter() - start) * 1000
        response.headers["X-Request-Duration-Ms"] = f"{duration_ms:.1f}"
        response.headers["X-Request-ID"] = g.request_id
        if request.path in _QUIET_PATHS:
            return response

        extra = {
            "method": request.method,
            "path": request.path,
            "status": response.status_code,
            "duration_ms": duration_ms,
            "remote_addr": request.remote_addr,
            "request_id": g.request_id,
        }
        caller = request.headers.get("X-User", "anonymous")
        if response.status_code >= 500:
            level, label = logging.ERROR, "Server error"
        elif duration_ms > slow_ms:
            level, label = logging.WARNING, "Slow request"
        else:
            level, label = logging.DEBUG, "Request"
        logger.log(level, "%s: %s %s %d by %s (%.0fms)", label, request.method, request.path,
                   response.status_code, caller, duration_ms, extra=extra)
        return response
