"""
Async condition waiter.

Blocks a resource's transition to ready on an externally asynchronous
process (certificate validation, distribution deployment) by polling a
side-effect-free predicate at a fixed interval.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

import structlog
from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    retry_if_result,
    stop_after_delay,
    wait_fixed,
)

from sitelayer.core.errors import ApplyCancelled, AsyncConditionTimeout, TransientProviderError

logger = structlog.get_logger()

Predicate = Callable[[], Awaitable[bool]]


def cancellable_sleep(cancel_event: asyncio.Event | None) -> Callable[[float], Awaitable[None]]:
    """Sleep function for tenacity that wakes up as soon as the apply is cancelled."""

    async def _sleep(seconds: float) -> None:
        if cancel_event is None:
            await asyncio.sleep(seconds)
            return
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        raise ApplyCancelled("Apply cancelled while waiting")

    return _sleep


class ConditionWaiter:
    """Polls an external condition until it holds, times out, or is cancelled."""

    def __init__(
        self,
        poll_interval: float,
        timeout: float,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        self.poll_interval = poll_interval
        self.timeout = timeout
        self._cancel_event = cancel_event

    async def wait(self, predicate: Predicate, description: str) -> None:
        """Return once ``predicate`` is true.

        Raises:
            AsyncConditionTimeout: the predicate stayed false for ``timeout`` seconds
            ApplyCancelled: the apply was cancelled while polling
        """
        self._check_cancelled()
        attempt = 0
        try:
            async for poll in AsyncRetrying(
                retry=retry_if_result(lambda ok: not ok)
                | retry_if_exception_type(TransientProviderError),
                wait=wait_fixed(self.poll_interval),
                stop=stop_after_delay(self.timeout),
                sleep=cancellable_sleep(self._cancel_event),
            ):
                with poll:
                    attempt += 1
                    self._check_cancelled()
                    ok = await predicate()
                    logger.debug("condition_poll", condition=description, attempt=attempt, ok=ok)
                if not poll.retry_state.outcome.failed:
                    poll.retry_state.set_result(ok)
        except RetryError as exc:
            logger.warning("condition_timeout", condition=description, attempts=attempt)
            raise AsyncConditionTimeout(description, self.timeout) from exc

        logger.info("condition_met", condition=description, attempts=attempt)

    def _check_cancelled(self) -> None:
        if self._cancel_event is not None and self._cancel_event.is_set():
            raise ApplyCancelled("Apply cancelled while waiting")
