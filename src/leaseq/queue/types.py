"""Type aliases for the queue package."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .enum import HandlerResult
    from .message import Message, StoreEvent
    from .queue import MessageQueue

__all__ = (
    "MessageHandler",
    "MessageId",
    "QueueName",
    "QueueResolver",
    "Receipt",
    "StoreListener",
)


type MessageId = str
type QueueName = str
type Receipt = str

type MessageHandler = Callable[[Message], Awaitable[HandlerResult | None] | HandlerResult | None]
type StoreListener = Callable[[StoreEvent], None]
type QueueResolver = Callable[[QueueName], MessageQueue]
