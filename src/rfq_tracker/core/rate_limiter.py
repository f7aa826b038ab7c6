"""Token bucket rate limiting for outbound HTTP calls.

The Graph client and the auto-reply client both run their requests on
worker threads (the async engine dispatches them via asyncio.to_thread),
so the bucket here is thread-safe and blocking.

Standard rate limits by service:
- ms_graph: 10 requests per second (Microsoft Graph API)
- auto_reply: 2 requests per second (demo auto-reply backend)
"""

import functools
import threading
import time
from collections.abc import Callable
from typing import Any, TypeVar, cast

from rfq_tracker.core.errors import RateLimitExceeded
from rfq_tracker.core.logging import get_logger

logger = get_logger(__name__)

F = TypeVar("F", bound=Callable[..., Any])

# Waits longer than this raise instead of blocking a worker thread
MAX_WAIT_SECONDS = 20.0


class TokenBucket:
    """Token bucket rate limiter.

    Tokens are added at a fixed rate up to ``capacity``; each request
    consumes one. When the bucket is empty the caller sleeps until a token
    is available.

    Example:
        limiter = TokenBucket(rate=10.0, capacity=10)
        limiter.consume()  # blocks if needed
    """

    def __init__(
        self,
        rate: float = 1.0,
        capacity: int = 1,
        initial_tokens: int | None = None,
    ):
        """Initialize a token bucket.

        Args:
            rate: Token refill rate per second
            capacity: Maximum number of tokens in the bucket
            initial_tokens: Starting tokens (defaults to capacity)
        """
        self.rate = rate
        self.capacity = capacity
        self.tokens: float = capacity if initial_tokens is None else initial_tokens
        self.last_refill = time.monotonic()
        self._lock = threading.Lock()

    def consume(self, tokens: int = 1) -> bool:
        """Consume tokens, sleeping until they are available.

        Args:
            tokens: Number of tokens to consume

        Returns:
            True once the tokens were consumed

        Raises:
            RateLimitExceeded: If the request exceeds capacity or the wait
                would exceed MAX_WAIT_SECONDS
        """
        if tokens > self.capacity:
            raise RateLimitExceeded(
                f"Requested tokens ({tokens}) exceed bucket capacity ({self.capacity})"
            )

        with self._lock:
            self._refill()
            if self.tokens >= tokens:
                self.tokens -= tokens
                return True

            required_tokens = tokens - self.tokens
            wait_time = required_tokens / self.rate
            if wait_time > MAX_WAIT_SECONDS:
                logger.warning(
                    "rate_limit_wait_excessive",
                    wait_time=wait_time,
                    tokens_needed=required_tokens,
                )
                raise RateLimitExceeded(f"Rate limit exceeded, would require {wait_time:.2f}s wait")

        logger.debug("rate_limit_waiting", wait_time=wait_time, tokens_needed=required_tokens)
        time.sleep(wait_time)

        with self._lock:
            self._refill()
            if self.tokens < tokens:
                raise RateLimitExceeded("Failed to get enough tokens even after waiting")
            self.tokens -= tokens
            return True

    def _refill(self) -> None:
        now = time.monotonic()
        elapsed = now - self.last_refill
        self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
        self.last_refill = now


_buckets: dict[str, TokenBucket] = {}
_buckets_lock = threading.Lock()


def get_bucket(name: str = "default", rate: float = 1.0, capacity: int = 1) -> TokenBucket:
    """Get or create the shared token bucket for a service.

    Args:
        name: Bucket name/identifier
        rate: Token refill rate if creating a new bucket
        capacity: Token capacity if creating a new bucket

    Returns:
        TokenBucket instance
    """
    with _buckets_lock:
        if name not in _buckets:
            _buckets[name] = TokenBucket(rate=rate, capacity=capacity)
        return _buckets[name]


def rate_limit(
    bucket_name: str = "default",
    tokens: int = 1,
    rate: float = 1.0,
    capacity: int = 1,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator applying a named token bucket to a synchronous function.

    Example:
        @rate_limit(bucket_name="auto_reply", rate=2.0, capacity=2)
        def schedule(payload): ...

    Args:
        bucket_name: Name of the token bucket to use
        tokens: Number of tokens to consume per call
        rate: Token refill rate per second
        capacity: Maximum number of tokens in the bucket

    Returns:
        Decorated function
    """

    def decorator(func: F) -> F:
        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            get_bucket(bucket_name, rate, capacity).consume(tokens)
            return func(*args, **kwargs)

        return cast(F, wrapper)

    return decorator
