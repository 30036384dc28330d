"""Application bootstrap and event dispatch for Forward Relay."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable

from .errors import ConnectionLostError
from .forwarding import handle_update
from .health import healthcheck_loop
from .models import InboundEvent, RoutingConfig, RuntimeOptions
from .telegram import TelegramClientProtocol

logger = logging.getLogger(__name__)


class RelayApp:
    """High level coordinator tying together the Telegram session and routing.

    The dispatcher waits for whichever comes first: a shutdown request or the
    next update from the client. Every update is handed to its own task that
    is not awaited by the loop. Once shutdown wins the race, the session is
    persisted and :meth:`run` returns; worker tasks still in flight are left
    alone unless ``RuntimeOptions.drain_timeout`` allows waiting for them.
    """

    def __init__(
        self,
        *,
        config: RoutingConfig,
        client: TelegramClientProtocol,
        phone: str,
        runtime: RuntimeOptions | None = None,
    ):
        self._config = config
        self._client = client
        self._phone = phone
        self._runtime = runtime or RuntimeOptions()
        self._shutdown = asyncio.Event()
        self._workers: set[asyncio.Task[None]] = set()
        limit = self._runtime.max_concurrency
        if limit is not None and limit < 1:
            raise ValueError("max_concurrency must be at least 1")
        self._limiter = asyncio.Semaphore(limit) if limit is not None else None

    @property
    def in_flight(self) -> int:
        return len(self._workers)

    def request_shutdown(self) -> None:
        self._shutdown.set()

    async def run(self) -> None:
        if not await self._start_unless_shutdown():
            logger.info("Остановка до завершения подключения")
            return
        health_task = asyncio.create_task(
            self._supervise(
                "health-monitor",
                lambda: healthcheck_loop(
                    self._client, interval=self._runtime.healthcheck_interval
                ),
            ),
            name="health-monitor-supervisor",
        )
        try:
            await self._dispatch_loop()
        finally:
            health_task.cancel()
        await self._finish()

    async def _start_unless_shutdown(self) -> bool:
        """Run start-up, abandoning it if shutdown is requested first."""

        start_task = asyncio.create_task(self._start())
        stop_task = asyncio.create_task(self._shutdown.wait())
        try:
            await asyncio.wait({start_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_task.cancel()
            if not start_task.done():
                start_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await start_task
        if start_task.cancelled():
            return False
        start_task.result()
        return True

    async def _start(self) -> None:
        logger.info("Подключение к Telegram...")
        await self._client.connect()
        logger.info("Подключено к Telegram")
        self._client.save_session()

        if not await self._client.is_authorized():
            logger.info("Сессия не авторизована, выполняется вход...")
            await self._client.login(self._phone)
            self._client.save_session()

        me = await self._client.get_me()
        logger.info("Вход выполнен как %s", me.label)
        logger.info("Ожидание сообщений...")

    async def _dispatch_loop(self) -> None:
        while True:
            try:
                update = await self._receive()
            except ConnectionLostError:
                raise
            except Exception:
                logger.exception("Ошибка получения обновления")
                if await self._wait_for_shutdown(self._runtime.update_error_delay):
                    return
                continue
            if update is None:
                return
            self._spawn_worker(update)

    async def _receive(self) -> InboundEvent | None:
        """Return the next update, or ``None`` once shutdown is requested."""

        stop_task = asyncio.create_task(self._shutdown.wait())
        update_task = asyncio.create_task(self._client.next_update())
        try:
            await asyncio.wait({stop_task, update_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (stop_task, update_task):
                if not task.done():
                    task.cancel()

        if stop_task.done() and not stop_task.cancelled():
            if update_task.done() and not update_task.cancelled():
                # mark the result as retrieved; the update is dropped on shutdown
                update_task.exception()
            return None
        return update_task.result()

    async def _wait_for_shutdown(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._shutdown.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    def _spawn_worker(self, update: InboundEvent) -> None:
        task = asyncio.create_task(self._handle(update))
        self._workers.add(task)
        task.add_done_callback(self._workers.discard)

    async def _handle(self, update: InboundEvent) -> None:
        try:
            if self._limiter is None:
                await handle_update(self._config, self._client, update)
            else:
                async with self._limiter:
                    await handle_update(self._config, self._client, update)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Ошибка обработки обновления")

    async def _finish(self) -> None:
        drain_timeout = self._runtime.drain_timeout
        if self._workers and drain_timeout > 0:
            logger.info("Ожидание незавершённых пересылок: %d", len(self._workers))
            _, pending = await asyncio.wait(set(self._workers), timeout=drain_timeout)
            if pending:
                logger.warning("Не дождались завершения пересылок: %d", len(pending))
        logger.info("Сохранение сессии и выход...")
        self._client.save_session()

    async def _supervise(
        self,
        name: str,
        factory: Callable[[], Awaitable[None]],
        *,
        retry_delay: float = 5.0,
    ) -> None:
        while True:
            try:
                await factory()
            except asyncio.CancelledError:
                logger.info("Задача %s остановлена", name)
                raise
            except Exception:
                logger.exception("Задача %s завершилась с ошибкой", name)
            else:
                logger.warning("Задача %s завершилась неожиданно, будет перезапущена", name)
            await asyncio.sleep(retry_delay)
