"""Per-event forwarding of source messages to every configured target."""

from __future__ import annotations

import asyncio
import logging
from typing import Final

from .models import Conversation, InboundEvent, NewMessage, RoutingConfig
from .telegram import TelegramClientProtocol

logger = logging.getLogger(__name__)

MAX_RETRIES: Final = 3


async def handle_update(
    config: RoutingConfig,
    client: TelegramClientProtocol,
    event: InboundEvent,
) -> None:
    """Forward ``event`` to every target when it comes from a source chat.

    Targets are handled one after another. Each target is looked up in a
    fresh enumeration of the account's dialogs; a target that is not visible
    is skipped without a log record. Delivery errors are logged and retried
    up to :data:`MAX_RETRIES` attempts per target and never raised. Errors
    while enumerating dialogs propagate to the caller.
    """

    if not isinstance(event, NewMessage) or event.outgoing:
        return

    chat_id = event.chat_id
    if config.verbose:
        logger.info(
            "\nЧат: %s\nОтправитель: %s\nСообщение: %s\n",
            chat_id,
            event.sender_name,
            event.text,
        )

    if not config.is_source(chat_id):
        return

    for target in config.targets:
        conversation = await find_conversation(client, target)
        if conversation is None:
            continue
        await forward_with_retries(client, conversation, event)


async def find_conversation(
    client: TelegramClientProtocol, conversation_id: int
) -> Conversation | None:
    async for conversation in client.iter_conversations():
        if conversation.id == conversation_id:
            return conversation
    return None


async def forward_with_retries(
    client: TelegramClientProtocol,
    target: Conversation,
    message: NewMessage,
    *,
    attempts: int = MAX_RETRIES,
) -> bool:
    for _ in range(attempts):
        try:
            await client.forward_message(target, message)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error("Ошибка пересылки сообщения: %s", exc)
            continue
        logger.info("Сообщение переслано из %s в %s", message.chat_id, target.id)
        return True
    return False
