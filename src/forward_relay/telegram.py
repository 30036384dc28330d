"""Telegram user-session facade for receiving and forwarding messages."""

from __future__ import annotations

import asyncio
import contextlib
import getpass
import logging
import threading
from typing import Any, AsyncIterator, Awaitable, Callable, Protocol

from telethon import TelegramClient, events
from telethon.errors import RPCError, SessionPasswordNeededError
from telethon.sessions import StringSession
from telethon.utils import get_display_name

from .errors import AuthorizationError, ConnectionLostError
from .models import Account, Conversation, Credentials, InboundEvent, NewMessage, OtherUpdate
from .reconnect import GiveUp, ReconnectionPolicy
from .session_store import SessionStore

logger = logging.getLogger(__name__)

Prompt = Callable[[str], Awaitable[str]]

_CONNECTION_LOST = object()


class TelegramClientProtocol(Protocol):
    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...

    async def is_authorized(self) -> bool: ...

    async def login(self, phone: str) -> None: ...

    async def get_me(self) -> Account: ...

    def save_session(self) -> None: ...

    async def next_update(self) -> InboundEvent: ...

    def iter_conversations(self) -> AsyncIterator[Conversation]: ...

    async def forward_message(self, target: Conversation, message: NewMessage) -> None: ...


async def prompt_line(message: str) -> str:
    """Ask for a line on the controlling terminal without blocking the loop."""

    answer = await _read_in_daemon_thread(input, message)
    return answer.strip()


async def prompt_secret(message: str) -> str:
    return await _read_in_daemon_thread(getpass.getpass, message)


def _read_in_daemon_thread(reader: Callable[[str], str], message: str) -> asyncio.Future[str]:
    """Call a blocking terminal reader without tying process exit to it.

    Cancelling the returned future abandons the read; the daemon thread stays
    blocked on the terminal until the process exits.
    """

    loop = asyncio.get_running_loop()
    future: asyncio.Future[str] = loop.create_future()

    def deliver(result: str | None, error: Exception | None) -> None:
        if future.done():
            return
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result or "")

    def worker() -> None:
        try:
            result = reader(message)
        except Exception as exc:
            outcome: tuple[str | None, Exception | None] = (None, exc)
        else:
            outcome = (result, None)
        # a closed loop means nobody waits for the answer any more
        with contextlib.suppress(RuntimeError):
            loop.call_soon_threadsafe(deliver, *outcome)

    threading.Thread(target=worker, name="relay-prompt", daemon=True).start()
    return future


class TelethonGateway:
    """Single MTProto connection shared by the dispatcher and every worker.

    Incoming updates are queued by Telethon event handlers and handed out one
    at a time through :meth:`next_update`. Telethon's own reconnection is
    disabled; drops are handled by a supervisor task that consults a
    :class:`ReconnectionPolicy` and, once the policy gives up, makes
    :meth:`next_update` raise :class:`ConnectionLostError`.
    """

    def __init__(
        self,
        client: TelegramClient,
        store: SessionStore,
        *,
        policy: ReconnectionPolicy | None = None,
        code_prompt: Prompt = prompt_line,
        password_prompt: Prompt = prompt_secret,
    ):
        self._client = client
        self._store = store
        self._policy = policy or ReconnectionPolicy()
        self._code_prompt = code_prompt
        self._password_prompt = password_prompt
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._supervisor: asyncio.Task[None] | None = None
        self._closing = False
        self._lost = False
        client.add_event_handler(self._on_new_message, events.NewMessage())
        client.add_event_handler(self._on_message_edited, events.MessageEdited())
        client.add_event_handler(self._on_message_deleted, events.MessageDeleted())

    @classmethod
    def create(
        cls,
        credentials: Credentials,
        store: SessionStore,
        *,
        policy: ReconnectionPolicy | None = None,
    ) -> "TelethonGateway":
        saved = store.load_session()
        saved_at = store.session_saved_at()
        if saved is None:
            logger.info("Сохранённой сессии нет, потребуется вход")
        elif saved_at is not None:
            logger.info("Используется сессия, сохранённая %s", saved_at.isoformat())
        client = TelegramClient(
            StringSession(saved),
            credentials.api_id,
            credentials.api_hash,
            connection_retries=0,
            retry_delay=0,
            auto_reconnect=False,
        )
        return cls(client, store, policy=policy)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------
    async def connect(self) -> None:
        await self._client.connect()
        if self._supervisor is None:
            self._supervisor = asyncio.create_task(
                self._supervise_connection(), name="telegram-reconnect"
            )

    async def disconnect(self) -> None:
        self._closing = True
        if self._supervisor is not None:
            self._supervisor.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._supervisor
            self._supervisor = None
        await self._client.disconnect()

    async def is_authorized(self) -> bool:
        return bool(await self._client.is_user_authorized())

    async def login(self, phone: str) -> None:
        try:
            await self._client.send_code_request(phone)
            code = await self._code_prompt("Введите код, присланный Telegram: ")
            try:
                await self._client.sign_in(phone=phone, code=code)
            except SessionPasswordNeededError:
                password = await self._password_prompt("Введите пароль двухэтапной проверки: ")
                await self._client.sign_in(password=password)
        except RPCError as exc:
            raise AuthorizationError(f"Не удалось войти в Telegram: {exc}") from exc
        if not await self.is_authorized():
            raise AuthorizationError("Telegram не подтвердил авторизацию")

    def save_session(self) -> None:
        self._store.save_session(self._client.session.save())

    async def _supervise_connection(self) -> None:
        while not self._closing:
            try:
                await self._client.disconnected
            except Exception as exc:
                logger.warning("Соединение с Telegram разорвано: %s", exc)
            if self._closing:
                return
            logger.warning("Соединение с Telegram потеряно, начинаю переподключение")
            if await self._reconnect():
                continue
            self._lost = True
            await self._client.disconnect()
            self._queue.put_nowait(_CONNECTION_LOST)
            return

    async def _reconnect(self) -> bool:
        attempt = 0
        while True:
            decision = self._policy.decide(attempt)
            if isinstance(decision, GiveUp):
                return False
            await asyncio.sleep(decision.delay)
            try:
                await self._client.connect()
            except Exception as exc:
                logger.warning("Попытка переподключения %d не удалась: %s", attempt + 1, exc)
                attempt += 1
                continue
            logger.info("Соединение с Telegram восстановлено")
            return True

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    async def get_me(self) -> Account:
        me = await self._client.get_me()
        if me is None:
            raise AuthorizationError("Сессия Telegram не авторизована")
        return Account(
            id=int(me.id),
            username=getattr(me, "username", None),
            display_name=get_display_name(me),
        )

    async def next_update(self) -> InboundEvent:
        if self._lost:
            raise ConnectionLostError("Соединение с Telegram потеряно безвозвратно")
        item = await self._queue.get()
        if item is _CONNECTION_LOST:
            raise ConnectionLostError("Соединение с Telegram потеряно безвозвратно")
        return item

    async def iter_conversations(self) -> AsyncIterator[Conversation]:
        async for dialog in self._client.iter_dialogs():
            yield Conversation(id=int(dialog.id), name=dialog.name or "", peer=dialog.input_entity)

    async def forward_message(self, target: Conversation, message: NewMessage) -> None:
        destination = target.peer if target.peer is not None else target.id
        source = message.source_peer if message.source_peer is not None else message.chat_id
        await self._client.forward_messages(destination, [message.message_id], from_peer=source)

    # ------------------------------------------------------------------
    # Event handlers
    # ------------------------------------------------------------------
    async def _on_new_message(self, event: events.NewMessage.Event) -> None:
        self._queue.put_nowait(
            NewMessage(
                chat_id=int(event.chat_id),
                message_id=int(event.message.id),
                text=event.raw_text or "",
                sender_name=await self._sender_name(event),
                outgoing=bool(event.out),
                source_peer=await event.get_input_chat(),
            )
        )

    async def _on_message_edited(self, event: events.MessageEdited.Event) -> None:
        self._queue.put_nowait(OtherUpdate(kind="message_edited"))

    async def _on_message_deleted(self, event: events.MessageDeleted.Event) -> None:
        self._queue.put_nowait(OtherUpdate(kind="message_deleted"))

    async def _sender_name(self, event: events.NewMessage.Event) -> str:
        try:
            entity = await event.get_sender() or await event.get_chat()
        except (RPCError, ValueError) as exc:
            logger.warning("Не удалось определить отправителя в чате %s: %s", event.chat_id, exc)
            return ""
        if entity is None:
            return ""
        return get_display_name(entity)
