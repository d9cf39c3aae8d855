"""
Simple in-memory rate limiter for checkout creation.
Stops a single client from opening checkout sessions in a tight loop.
"""
import time
from collections import defaultdict
from typing import Dict, Tuple
from fastapi import Request


class RateLimiter:
    """
    In-memory rate limiter using sliding window algorithm.
    Per-process only; with multiple workers each worker counts separately.
    """

    def __init__(self):
        # {key: [timestamp, ...]}
        self._requests: Dict[str, list] = defaultdict(list)

    def _cleanup_old_requests(self, key: str, window_seconds: int):
        """Remove requests older than the window."""
        cutoff = time.time() - window_seconds
        self._requests[key] = [ts for ts in self._requests[key] if ts > cutoff]

    def is_rate_limited(
        self,
        key: str,
        max_requests: int = 10,
        window_seconds: int = 60
    ) -> Tuple[bool, int]:
        """
        Check if key is rate limited.
        Returns (is_limited, retry_after_seconds)
        """
        self._cleanup_old_requests(key, window_seconds)

        if len(self._requests[key]) >= max_requests:
            oldest = self._requests[key][0]
            return True, max(1, int(oldest + window_seconds - time.time()))

        return False, 0

    def record_request(self, key: str):
        self._requests[key].append(time.time())

    def clear(self):
        self._requests.clear()


# Global rate limiter instance for checkout attempts
checkout_rate_limiter = RateLimiter()


def get_client_ip(request: Request) -> str:
    """
    Client IP as resolved by ProxyHeadersMiddleware.

    Forwarding headers are only honoured from FORWARDED_ALLOW_IPS.
    """
    if request.client:
        return request.client.host

    return "unknown"
