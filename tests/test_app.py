from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator

import pytest

from forward_relay.app import RelayApp
from forward_relay.errors import ConnectionLostError
from forward_relay.models import (
    Account,
    Conversation,
    InboundEvent,
    NewMessage,
    RoutingConfig,
    RuntimeOptions,
)

SOURCE = -100
TARGET = 200


class DummyClient:
    def __init__(
        self,
        *,
        authorized: bool = True,
        forward_delay: float = 0.0,
    ) -> None:
        self.queue: asyncio.Queue[InboundEvent | Exception] = asyncio.Queue()
        self.authorized = authorized
        self.forward_delay = forward_delay
        self.connected = False
        self.logins: list[str] = []
        self.saves = 0
        self.receive_calls = 0
        self.probes = 0
        self.forwarded: list[int] = []
        self.active_forwards = 0
        self.max_active_forwards = 0

    async def connect(self) -> None:
        self.connected = True

    async def disconnect(self) -> None:
        self.connected = False

    async def is_authorized(self) -> bool:
        return self.authorized

    async def login(self, phone: str) -> None:
        self.logins.append(phone)
        self.authorized = True

    async def get_me(self) -> Account:
        self.probes += 1
        return Account(id=1, username="relay")

    def save_session(self) -> None:
        self.saves += 1

    async def next_update(self) -> InboundEvent:
        self.receive_calls += 1
        item = await self.queue.get()
        if isinstance(item, Exception):
            raise item
        return item

    async def iter_conversations(self) -> AsyncIterator[Conversation]:
        yield Conversation(id=TARGET, name="target")

    async def forward_message(self, target: Conversation, message: NewMessage) -> None:
        self.active_forwards += 1
        self.max_active_forwards = max(self.max_active_forwards, self.active_forwards)
        try:
            if self.forward_delay:
                await asyncio.sleep(self.forward_delay)
            self.forwarded.append(message.message_id)
        finally:
            self.active_forwards -= 1


def _config() -> RoutingConfig:
    return RoutingConfig(sources=frozenset({SOURCE}), targets=(TARGET,), verbose=False)


def _message(message_id: int) -> NewMessage:
    return NewMessage(chat_id=SOURCE, message_id=message_id, text="hi", sender_name="Alice")


async def _wait_until(predicate, timeout: float = 1.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.005)


def test_shutdown_persists_session_once_and_stops_dispatch() -> None:
    async def runner() -> None:
        client = DummyClient()
        app = RelayApp(config=_config(), client=client, phone="+7000")
        task = asyncio.create_task(app.run())

        client.queue.put_nowait(_message(1))
        await _wait_until(lambda: client.forwarded == [1])
        assert client.saves == 1

        app.request_shutdown()
        await asyncio.wait_for(task, timeout=1.0)
        assert client.saves == 2

        calls = client.receive_calls
        client.queue.put_nowait(_message(2))
        await asyncio.sleep(0.02)
        assert client.receive_calls == calls
        assert client.forwarded == [1]
        assert client.saves == 2

    asyncio.run(runner())


def test_unauthorized_session_logs_in_first() -> None:
    async def runner() -> None:
        client = DummyClient(authorized=False)
        app = RelayApp(config=_config(), client=client, phone="+7000")
        task = asyncio.create_task(app.run())
        await _wait_until(lambda: client.receive_calls > 0)
        app.request_shutdown()
        await asyncio.wait_for(task, timeout=1.0)

        assert client.logins == ["+7000"]
        assert client.saves == 3

    asyncio.run(runner())


def test_receive_errors_cool_down_and_continue(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.ERROR, logger="forward_relay")

    async def runner() -> None:
        client = DummyClient()
        runtime = RuntimeOptions(update_error_delay=0.01)
        app = RelayApp(config=_config(), client=client, phone="+7000", runtime=runtime)
        task = asyncio.create_task(app.run())

        client.queue.put_nowait(RuntimeError("transport hiccup"))
        client.queue.put_nowait(_message(5))
        await _wait_until(lambda: client.forwarded == [5])
        assert not task.done()

        app.request_shutdown()
        await asyncio.wait_for(task, timeout=1.0)

    asyncio.run(runner())
    assert any(
        record.exc_info and "transport hiccup" in str(record.exc_info[1])
        for record in caplog.records
    )


def test_shutdown_interrupts_error_cooldown() -> None:
    async def runner() -> None:
        client = DummyClient()
        runtime = RuntimeOptions(update_error_delay=30.0)
        app = RelayApp(config=_config(), client=client, phone="+7000", runtime=runtime)
        task = asyncio.create_task(app.run())

        client.queue.put_nowait(RuntimeError("boom"))
        await _wait_until(lambda: client.receive_calls == 1 and client.queue.empty())
        await asyncio.sleep(0.01)
        app.request_shutdown()
        await asyncio.wait_for(task, timeout=1.0)
        assert client.saves == 2

    asyncio.run(runner())


def test_connection_lost_is_fatal() -> None:
    async def runner() -> None:
        client = DummyClient()
        app = RelayApp(config=_config(), client=client, phone="+7000")
        client.queue.put_nowait(ConnectionLostError("gone"))
        with pytest.raises(ConnectionLostError):
            await asyncio.wait_for(app.run(), timeout=1.0)
        assert client.saves == 1

    asyncio.run(runner())


def test_worker_failures_do_not_stop_dispatch(caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.ERROR, logger="forward_relay")

    class FlakyDialogs(DummyClient):
        async def iter_conversations(self) -> AsyncIterator[Conversation]:
            if not self.forwarded and not getattr(self, "failed", False):
                self.failed = True
                raise ConnectionError("dialogs unavailable")
            yield Conversation(id=TARGET, name="target")

    async def runner() -> None:
        client = FlakyDialogs()
        app = RelayApp(config=_config(), client=client, phone="+7000")
        task = asyncio.create_task(app.run())

        client.queue.put_nowait(_message(1))
        await _wait_until(lambda: app.in_flight == 0 and client.receive_calls >= 2)
        client.queue.put_nowait(_message(2))
        await _wait_until(lambda: client.forwarded == [2])

        app.request_shutdown()
        await asyncio.wait_for(task, timeout=1.0)

    asyncio.run(runner())
    assert any(record.exc_info for record in caplog.records)


def test_shutdown_does_not_wait_for_workers_by_default() -> None:
    async def runner() -> None:
        client = DummyClient(forward_delay=0.2)
        app = RelayApp(config=_config(), client=client, phone="+7000")
        task = asyncio.create_task(app.run())

        client.queue.put_nowait(_message(1))
        await _wait_until(lambda: client.active_forwards == 1)
        app.request_shutdown()
        await asyncio.wait_for(task, timeout=0.1)

        assert client.forwarded == []
        assert app.in_flight == 1

    asyncio.run(runner())


def test_drain_timeout_waits_for_in_flight_forwards() -> None:
    async def runner() -> None:
        client = DummyClient(forward_delay=0.05)
        runtime = RuntimeOptions(drain_timeout=1.0)
        app = RelayApp(config=_config(), client=client, phone="+7000", runtime=runtime)
        task = asyncio.create_task(app.run())

        client.queue.put_nowait(_message(1))
        await _wait_until(lambda: client.active_forwards == 1)
        app.request_shutdown()
        await asyncio.wait_for(task, timeout=1.0)

        assert client.forwarded == [1]
        assert app.in_flight == 0

    asyncio.run(runner())


def test_max_concurrency_bounds_workers() -> None:
    async def runner() -> None:
        client = DummyClient(forward_delay=0.02)
        runtime = RuntimeOptions(max_concurrency=1, drain_timeout=1.0)
        app = RelayApp(config=_config(), client=client, phone="+7000", runtime=runtime)
        task = asyncio.create_task(app.run())

        for message_id in range(1, 4):
            client.queue.put_nowait(_message(message_id))
        await _wait_until(lambda: len(client.forwarded) == 3)
        app.request_shutdown()
        await asyncio.wait_for(task, timeout=1.0)

        assert client.max_active_forwards == 1

    asyncio.run(runner())


def test_unbounded_workers_run_concurrently() -> None:
    async def runner() -> None:
        client = DummyClient(forward_delay=0.05)
        runtime = RuntimeOptions(drain_timeout=1.0)
        app = RelayApp(config=_config(), client=client, phone="+7000", runtime=runtime)
        task = asyncio.create_task(app.run())

        for message_id in range(1, 4):
            client.queue.put_nowait(_message(message_id))
        await _wait_until(lambda: len(client.forwarded) == 3)
        app.request_shutdown()
        await asyncio.wait_for(task, timeout=1.0)

        assert client.max_active_forwards == 3

    asyncio.run(runner())


def test_health_monitor_runs_alongside_dispatcher() -> None:
    async def runner() -> None:
        client = DummyClient()
        runtime = RuntimeOptions(healthcheck_interval=0.01)
        app = RelayApp(config=_config(), client=client, phone="+7000", runtime=runtime)
        task = asyncio.create_task(app.run())

        # one get_me call happens during start-up
        await _wait_until(lambda: client.probes >= 3)
        app.request_shutdown()
        await asyncio.wait_for(task, timeout=1.0)

        probes = client.probes
        await asyncio.sleep(0.05)
        assert client.probes == probes

    asyncio.run(runner())


def test_shutdown_during_slow_connect_stops_start_up() -> None:
    class HangingConnect(DummyClient):
        async def connect(self) -> None:
            await asyncio.sleep(3600)

    async def runner() -> None:
        client = HangingConnect()
        app = RelayApp(config=_config(), client=client, phone="+7000")
        task = asyncio.create_task(app.run())
        await asyncio.sleep(0.01)

        app.request_shutdown()
        await asyncio.wait_for(task, timeout=0.5)

        assert client.saves == 0
        assert client.receive_calls == 0

    asyncio.run(runner())


def test_shutdown_during_login_prompt_stops_start_up() -> None:
    class WaitingForCode(DummyClient):
        async def login(self, phone: str) -> None:
            self.logins.append(phone)
            await asyncio.Event().wait()

    async def runner() -> None:
        client = WaitingForCode(authorized=False)
        app = RelayApp(config=_config(), client=client, phone="+7000")
        task = asyncio.create_task(app.run())
        await _wait_until(lambda: client.logins == ["+7000"])

        app.request_shutdown()
        await asyncio.wait_for(task, timeout=0.5)

        assert client.saves == 1
        assert client.receive_calls == 0

    asyncio.run(runner())


def test_start_up_errors_still_propagate() -> None:
    class RefusingConnect(DummyClient):
        async def connect(self) -> None:
            raise ConnectionRefusedError("no route")

    async def runner() -> None:
        app = RelayApp(config=_config(), client=RefusingConnect(), phone="+7000")
        with pytest.raises(ConnectionRefusedError):
            await asyncio.wait_for(app.run(), timeout=1.0)

    asyncio.run(runner())


@pytest.mark.parametrize("limit", [0, -3])
def test_max_concurrency_below_one_is_rejected(limit: int) -> None:
    async def runner() -> None:
        RelayApp(
            config=_config(),
            client=DummyClient(),
            phone="+7000",
            runtime=RuntimeOptions(max_concurrency=limit),
        )

    with pytest.raises(ValueError):
        asyncio.run(runner())
