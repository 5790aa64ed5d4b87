import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _always(_: BaseException) -> bool:
    return True


class RetryExhausted(RuntimeError):
    def __init__(self, description: str, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"{description} failed after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings shared by every RPC call site.

    ``max_attempts=None`` retries forever, which only makes sense for offline
    cache builds where completeness beats liveness. ``backoff=1.0`` keeps the
    delay fixed; anything larger grows it geometrically up to ``max_delay``.
    """

    max_attempts: Optional[int] = 10
    delay: float = 3.0
    backoff: float = 1.0
    max_delay: float = 300.0
    jitter: bool = False
    is_retryable: Callable[[BaseException], bool] = _always

    @property
    def unbounded(self) -> bool:
        return self.max_attempts is None

    def delay_for(self, attempt: int) -> float:
        delay = min(self.delay * (self.backoff ** max(attempt - 1, 0)), self.max_delay)
        if self.jitter:
            delay *= 0.5 + random.random()
        return delay

    async def run(
        self,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        describe: str = "call",
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                result = await fn(*args)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if not self.is_retryable(exc):
                    raise
                if self.max_attempts is not None and attempt >= self.max_attempts:
                    logger.error("%s gave up after %d attempts: %s", describe, attempt, exc)
                    raise RetryExhausted(describe, attempt, exc) from exc
                delay = self.delay_for(attempt)
                limit = "inf" if self.max_attempts is None else str(self.max_attempts)
                logger.warning(
                    "%s failed (attempt %d/%s): %s; retrying in %.1fs",
                    describe, attempt, limit, exc, delay,
                )
                await sleep(delay)
                continue
            if attempt > 1:
                logger.info("%s succeeded after %d retries", describe, attempt - 1)
            return result
