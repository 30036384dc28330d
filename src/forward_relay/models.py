"""Data models used across the relay service."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union


@dataclass(frozen=True, slots=True)
class RoutingConfig:
    """Immutable routing table shared by every worker."""

    sources: frozenset[int] = frozenset()
    targets: tuple[int, ...] = ()
    verbose: bool = False

    def is_source(self, chat_id: int) -> bool:
        return chat_id in self.sources


@dataclass(slots=True)
class RuntimeOptions:
    """Tunable behaviour of the dispatcher and background loops."""

    update_error_delay: float = 5.0
    healthcheck_interval: float = 300.0
    max_concurrency: int | None = None
    drain_timeout: float = 0.0


@dataclass(frozen=True, slots=True)
class Credentials:
    """API identity and phone number used to open the user session."""

    api_id: int
    api_hash: str
    phone: str


@dataclass(frozen=True, slots=True)
class NewMessage:
    """Freshly received message."""

    chat_id: int
    message_id: int
    text: str
    sender_name: str
    outgoing: bool = False
    source_peer: Any = field(default=None, compare=False, repr=False)


@dataclass(frozen=True, slots=True)
class OtherUpdate:
    """Any update the relay does not act upon."""

    kind: str


InboundEvent = Union[NewMessage, OtherUpdate]


@dataclass(frozen=True, slots=True)
class Conversation:
    """Dialog visible to the connected account."""

    id: int
    name: str
    peer: Any = field(default=None, compare=False, repr=False)


@dataclass(frozen=True, slots=True)
class Account:
    """Identity returned by the "who am I" probe."""

    id: int
    username: str | None = None
    display_name: str = ""

    @property
    def label(self) -> str:
        if self.username:
            return f"@{self.username}"
        return self.display_name or str(self.id)
