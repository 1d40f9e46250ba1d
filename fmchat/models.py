"""Conversation, Message and Attachment: the stored chat entities."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime

from .exceptions import MessageFinalizedError
from .schema import PartialMetadata, Role

__all__ = ["Attachment", "Conversation", "Message", "utc_now"]


def utc_now() -> datetime:
    """Return an aware UTC timestamp."""
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class Attachment:
    """Web page metadata attached to an assistant message.

    Each field is individually nullable while a response streams in.
    """

    title: str | None = None
    thumbnail: str | None = None
    description: str | None = None

    def fill(self, partial: PartialMetadata) -> None:
        """Copy every field present in *partial*; absent fields keep their value."""
        if partial.title is not None:
            self.title = partial.title
        if partial.thumbnail is not None:
            self.thumbnail = partial.thumbnail
        if partial.description is not None:
            self.description = partial.description

    @property
    def is_empty(self) -> bool:
        return self.title is None and self.thumbnail is None and self.description is None


class Message:
    """A single chat message.

    The role is fixed at creation. Content stays mutable until
    :meth:`finalize` is called, after which assigning it raises
    :class:`~fmchat.exceptions.MessageFinalizedError`.
    """

    def __init__(
        self,
        content: str,
        role: Role | str,
        timestamp: datetime | None = None,
        *,
        id: str | None = None,
        attachment: Attachment | None = None,
        finalized: bool = False,
    ) -> None:
        self.id = id or _new_id()
        self._role = Role.parse(role)
        self._content = content
        self.timestamp = timestamp or utc_now()
        self.attachment = attachment
        self._finalized = finalized

    @property
    def role(self) -> Role:
        return self._role

    @property
    def content(self) -> str:
        return self._content

    @content.setter
    def content(self, value: str) -> None:
        if self._finalized:
            raise MessageFinalizedError(f"Message {self.id} is finalized; content is read-only")
        self._content = value

    @property
    def finalized(self) -> bool:
        return self._finalized

    def finalize(self) -> None:
        self._finalized = True

    def __repr__(self) -> str:
        return (
            f"Message(id={self.id!r}, role={self._role.value!r}, "
            f"content={self._content!r}, finalized={self._finalized})"
        )


@dataclass
class Conversation:
    """Ordered collection of messages plus an optional rolling summary."""

    messages: list[Message] = field(default_factory=list)
    summary: str | None = None
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=utc_now)

    @property
    def sorted_messages(self) -> list[Message]:
        """Messages ordered by timestamp; ties keep insertion order."""
        return sorted(self.messages, key=lambda message: message.timestamp)

    @property
    def last_message(self) -> Message | None:
        ordered = self.sorted_messages
        return ordered[-1] if ordered else None

    @property
    def last_message_timestamp(self) -> datetime:
        last = self.last_message
        return self.created_at if last is None else last.timestamp

    def append(self, message: Message) -> Message:
        self.messages.append(message)
        return message
