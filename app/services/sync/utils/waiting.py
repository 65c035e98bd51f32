"""Waiting primitives for long-running sync stages.

first_of() waits on a stage's task but gives up waiting at a deadline, and
can also finish early when a polled store condition shows the stage is done.
The stage task itself is never cancelled: a timed-out stage keeps running
in the background and the caller only stops waiting for it.

retry_on_visibility_lag() wraps a write-then-verify operation in bounded
exponential backoff for stores that do not show a write to other readers
right away.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, TypeVar

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from app.services.sync.exceptions import RunVisibilityError

logger = logging.getLogger(__name__)

T = TypeVar("T")

RESPONSE = "response"
POLLED = "polled"
TIMEOUT = "timeout"


@dataclass
class RaceOutcome:
    """Which branch resolved first and with what."""
    winner: str
    value: Any = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.winner != TIMEOUT and self.error is None


async def _poll_until(poll: Callable[[], Awaitable[Any]], interval: float) -> Any:
    """Call poll() every interval seconds until it returns something other than None."""
    while True:
        try:
            value = await poll()
        except Exception as e:
            logger.warning(f"Poll check failed, will retry: {e}")
            value = None
        if value is not None:
            return value
        await asyncio.sleep(interval)


async def first_of(
    response: "asyncio.Future[Any]",
    timeout: float,
    poll: Optional[Callable[[], Awaitable[Any]]] = None,
    poll_interval: float = 2.0,
) -> RaceOutcome:
    """
    Wait for the first of {response, timeout, polled condition}.

    If the response fails while a poll is active, waiting continues on the
    poll until the deadline: the stage may still have recorded a terminal
    state even though its direct result was lost.

    Args:
        response: Task or future producing the stage's direct result
        timeout: Seconds to wait before giving up
        poll: Optional async callable returning a value once the condition holds
        poll_interval: Seconds between poll calls

    Returns:
        RaceOutcome naming the winning branch
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    poller = asyncio.ensure_future(_poll_until(poll, poll_interval)) if poll else None
    response_error: Optional[BaseException] = None

    try:
        pending = {response} | ({poller} if poller else set())
        while pending:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            done, pending = await asyncio.wait(pending, timeout=remaining, return_when=asyncio.FIRST_COMPLETED)
            if not done:
                break

            if poller is not None and poller in done:
                return RaceOutcome(winner=POLLED, value=poller.result())

            if response in done:
                if response.cancelled():
                    response_error = asyncio.CancelledError()
                else:
                    response_error = response.exception()
                if response_error is None:
                    return RaceOutcome(winner=RESPONSE, value=response.result())
                if poller is None:
                    return RaceOutcome(winner=RESPONSE, error=response_error)
                logger.warning(f"Stage response failed ({response_error}), waiting on polled state")

        return RaceOutcome(winner=TIMEOUT, error=response_error)
    finally:
        if poller is not None and not poller.done():
            poller.cancel()
            try:
                await poller
            except asyncio.CancelledError:
                pass


async def retry_on_visibility_lag(
    operation: Callable[[], Awaitable[T]],
    attempts: int = 5,
    min_wait: float = 0.5,
    max_wait: float = 8.0,
) -> T:
    """
    Await an idempotent write-and-verify operation until it verifies.

    The operation signals lag by raising RunVisibilityError; any other
    exception propagates immediately.

    Raises:
        RunVisibilityError: If the write is still not visible after all attempts
    """
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(RunVisibilityError),
        reraise=True,
    ):
        with attempt:
            return await operation()
