"""Request metrics for the /health endpoint.

Counts HTTP requests and error responses (status >= 400) for the lifetime
of the process. WebSocket traffic is not counted.
"""
import logging
import resource
import sys
import time
from typing import Any, Dict

from fastapi import Request

logger = logging.getLogger(__name__)

# Requests slower than this are logged in production
SLOW_REQUEST_SECONDS = 1.0


class RequestMetrics:
    """Process-lifetime request and error counters."""

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self.requests = 0
        self.errors = 0
        self.started_at = time.monotonic()

    def record(self, status_code: int) -> None:
        self.requests += 1
        if status_code >= 400:
            self.errors += 1

    def snapshot(self) -> Dict[str, Any]:
        error_rate = (self.errors / self.requests * 100) if self.requests else 0.0
        return {
            "uptime": int(time.monotonic() - self.started_at),
            "requests": self.requests,
            "errors": self.errors,
            "errorRate": f"{error_rate:.2f}%",
            "memory": {"maxRss": f"{peak_rss_mb()}MB"},
        }


def peak_rss_mb() -> int:
    """Peak resident set size of this process in megabytes."""
    peak = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss
    # Linux reports kilobytes, macOS bytes
    if sys.platform != "darwin":
        peak *= 1024
    return round(peak / 1024 / 1024)


metrics = RequestMetrics()


def track_requests(slow_log: bool = False):
    """Build an HTTP middleware that feeds ``metrics``.

    Args:
        slow_log: Warn about requests slower than SLOW_REQUEST_SECONDS.
    """

    async def middleware(request: Request, call_next):
        start = time.monotonic()
        try:
            response = await call_next(request)
        except Exception:
            metrics.record(500)
            raise
        metrics.record(response.status_code)

        duration = time.monotonic() - start
        if slow_log and duration > SLOW_REQUEST_SECONDS:
            logger.warning(
                "Slow request: %s %s took %dms",
                request.method, request.url.path, int(duration * 1000),
            )
        return response

    return middleware
