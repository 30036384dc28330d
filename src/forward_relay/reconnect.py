"""Backoff policy used when the Telegram connection drops."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Final, Union

logger = logging.getLogger(__name__)

MAX_RECONNECT_ATTEMPTS: Final = 10
MAX_RECONNECT_DELAY: Final = 60.0


@dataclass(frozen=True, slots=True)
class Retry:
    """Try again after ``delay`` seconds."""

    delay: float


@dataclass(frozen=True, slots=True)
class GiveUp:
    """Stop reconnecting; the connection is abandoned."""


GIVE_UP: Final = GiveUp()

Decision = Union[Retry, GiveUp]


class ReconnectionPolicy:
    """Capped exponential backoff with a hard attempt ceiling.

    ``attempt`` is the number of reconnects already tried for the current
    outage. The delay is ``min(2 ** attempt, max_delay)`` seconds; once
    ``attempt`` exceeds ``max_attempts`` the policy returns :data:`GIVE_UP`
    and must not be consulted again for this connection.
    """

    def __init__(
        self,
        *,
        max_attempts: int = MAX_RECONNECT_ATTEMPTS,
        max_delay: float = MAX_RECONNECT_DELAY,
    ) -> None:
        self.max_attempts = max_attempts
        self.max_delay = max_delay

    def delay_for(self, attempt: int) -> float:
        if attempt < 0:
            raise ValueError("attempt must be non-negative")
        return float(min(2**attempt, self.max_delay))

    def decide(self, attempt: int) -> Decision:
        if attempt < 0:
            raise ValueError("attempt must be non-negative")
        if attempt > self.max_attempts:
            logger.error("Слишком много попыток переподключения, соединение брошено")
            return GIVE_UP
        delay = self.delay_for(attempt)
        logger.info("Переподключение через %s с (попытка %d)", _format_seconds(delay), attempt + 1)
        return Retry(delay)


def _format_seconds(value: float) -> str:
    return (f"{value:.2f}").rstrip("0").rstrip(".") or "0"
