"""Bounded exponential backoff for transient store failures."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from sqlalchemy.exc import OperationalError

from agent_fleet.errors import StoreUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSIENT_ERRORS: tuple[type[BaseException], ...] = (OperationalError, OSError)


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    """Attempt budget and backoff base (delays are base, 2*base, 4*base, ...)."""

    attempts: int = 3
    base_delay_seconds: float = 1.0

    def delay_for(self, attempt: int) -> float:
        return self.base_delay_seconds * (2 ** (attempt - 1))


def call_with_retry(
    operation: Callable[[], T],
    *,
    context: str,
    policy: RetryPolicy,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation`` and retry only transient store errors.

    Logical errors (``FleetError`` subclasses, ``ValueError``) propagate on the
    first occurrence. After the last failed attempt the transient error is
    wrapped in ``StoreUnavailableError``.
    """

    attempt = 0
    last_error: BaseException | None = None
    while attempt < policy.attempts:
        attempt += 1
        try:
            return operation()
        except TRANSIENT_ERRORS as error:
            last_error = error
            logger.warning(
                "%s failed (attempt %d/%d): %s",
                context,
                attempt,
                policy.attempts,
                error,
            )
            if attempt < policy.attempts:
                delay = policy.delay_for(attempt)
                logger.info("Retrying %s in %.1fs", context, delay)
                sleep(delay)

    raise StoreUnavailableError(
        message=f"{context} failed after {policy.attempts} attempts: {last_error}",
    ) from last_error
