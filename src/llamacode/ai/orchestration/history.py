"""Append-only conversation history."""

from __future__ import annotations

import logging
from typing import Iterable, Iterator, Sequence

from ..types import Message

__all__ = ["ConversationHistory"]

LOGGER = logging.getLogger(__name__)


class ConversationHistory:
    """Ordered messages of one session.

    Only the turn processor writes to the history, and only with finalized
    messages; everybody else reads immutable snapshots.
    """

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._messages: list[Message] = list(messages)

    @property
    def messages(self) -> tuple[Message, ...]:
        return tuple(self._messages)

    def append(self, message: Message) -> None:
        self._messages.append(message)
        LOGGER.debug("History += %s message with %s part(s)", message.role, len(message.parts))

    def extend(self, messages: Sequence[Message]) -> None:
        for message in messages:
            self.append(message)

    def since(self, index: int) -> tuple[Message, ...]:
        return tuple(self._messages[index:])

    @property
    def last(self) -> Message | None:
        return self._messages[-1] if self._messages else None

    def clear(self) -> None:
        self._messages.clear()

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[Message]:
        return iter(tuple(self._messages))
