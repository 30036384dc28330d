"""Periodic liveness probe of the Telegram connection."""

from __future__ import annotations

import asyncio
import logging
from typing import Final

from .telegram import TelegramClientProtocol

logger = logging.getLogger(__name__)

HEALTHCHECK_INTERVAL: Final = 300.0


async def healthcheck_loop(
    client: TelegramClientProtocol,
    *,
    interval: float = HEALTHCHECK_INTERVAL,
) -> None:
    """Probe the connection with ``get_me`` every ``interval`` seconds, forever.

    Failures are only logged; the loop keeps running until cancelled.
    """

    logger.info("Запуск периодической проверки соединения")
    while True:
        await asyncio.sleep(interval)
        try:
            await client.get_me()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Проверка соединения не удалась: %s", exc)
        else:
            logger.info("Проверка соединения: всё в порядке")
