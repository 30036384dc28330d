"""Simple benchmark of the forwarding worker fan-out."""

from __future__ import annotations

import asyncio
import statistics
import sys
import time
from pathlib import Path
from typing import TYPE_CHECKING, AsyncIterator

if TYPE_CHECKING:
    from forward_relay.models import Conversation as ConversationType
    from forward_relay.models import NewMessage as NewMessageType
    from forward_relay.models import RoutingConfig as RoutingConfigType

PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC = PROJECT_ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

SOURCE_ID = -1000
DIALOG_COUNT = 500
TARGET_COUNT = 10


def _sample_config() -> "RoutingConfigType":
    from forward_relay.models import RoutingConfig

    # targets spread over the dialog list so lookups walk different distances
    step = DIALOG_COUNT // TARGET_COUNT
    targets = tuple(index * step for index in range(1, TARGET_COUNT + 1))
    return RoutingConfig(sources=frozenset({SOURCE_ID}), targets=targets, verbose=False)


def _sample_message(message_id: int) -> "NewMessageType":
    from forward_relay.models import NewMessage

    return NewMessage(
        chat_id=SOURCE_ID,
        message_id=message_id,
        text="foo" * 20,
        sender_name="Bench",
    )


class _NoopClient:
    def __init__(self) -> None:
        from forward_relay.models import Conversation

        self._dialogs = [Conversation(id=index, name=f"dialog {index}") for index in range(DIALOG_COUNT)]
        self.forwarded = 0

    async def iter_conversations(self) -> AsyncIterator["ConversationType"]:
        for dialog in self._dialogs:
            yield dialog

    async def forward_message(self, target: "ConversationType", message: "NewMessageType") -> None:
        self.forwarded += 1


async def benchmark_forwarding(iterations: int, *, concurrent: bool = False) -> int:
    from forward_relay.forwarding import handle_update

    config = _sample_config()
    client = _NoopClient()
    messages = [_sample_message(index) for index in range(iterations)]

    if concurrent:
        await asyncio.gather(*(handle_update(config, client, message) for message in messages))
    else:
        for message in messages:
            await handle_update(config, client, message)
    return client.forwarded


def _time(iterations: int, *, concurrent: bool) -> float:
    start = time.perf_counter()
    asyncio.run(benchmark_forwarding(iterations, concurrent=concurrent))
    return time.perf_counter() - start


def main() -> None:
    iterations = 200
    sequential = [_time(iterations, concurrent=False) for _ in range(5)]
    concurrent = [_time(iterations, concurrent=True) for _ in range(5)]

    print("Benchmark results (smaller is better)")
    print("Events per batch:", iterations)
    print("Targets per event:", TARGET_COUNT, "/ dialogs:", DIALOG_COUNT)
    print()
    print(f"Sequential average: {statistics.mean(sequential):.4f}s")
    print(f"Sequential stdev:   {statistics.pstdev(sequential):.4f}s")
    print(f"Concurrent average: {statistics.mean(concurrent):.4f}s")
    print(f"Concurrent stdev:   {statistics.pstdev(concurrent):.4f}s")


if __name__ == "__main__":
    main()
