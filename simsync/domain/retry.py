import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from simsync.domain.cancellation import CancellationToken
from simsync.errors import ApiError

log = logging.getLogger("retry")

T = TypeVar("T")


def is_service_unavailable(error: Exception) -> bool:
    return isinstance(error, ApiError) and error.status == 503


def is_transient_api_error(error: Exception) -> bool:
    # Network errors and timeouts carry no status; 4xx (410 included) are final.
    return isinstance(error, ApiError) and (error.status is None or error.status >= 500)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    base_delay: float = 1.0
    retryable: Callable[[Exception], bool] = is_service_unavailable

    def delay_for(self, attempt: int) -> float:
        return self.base_delay * (2 ** attempt)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        cancel_token: Optional[CancellationToken] = None,
        description: str = "request",
    ) -> T:
        """
        Await ``operation()`` until it succeeds, raises a non-retryable error,
        or ``max_attempts`` calls have been made. The last error is re-raised.
        """
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as e:
                attempt += 1
                if not self.retryable(e) or attempt >= self.max_attempts:
                    raise
                delay = self.delay_for(attempt)
                log.warning(
                    f"{description} failed (attempt {attempt}/{self.max_attempts}), retrying in {delay:.1f}s: {e}"
                )
                if cancel_token is not None:
                    await cancel_token.sleep(delay)
                else:
                    await asyncio.sleep(delay)
