"""
Structured response schema requested from the backend.

``StructuredMessage`` is the response contract for an assistant turn and
``WebPageMetadata`` is the result of the WebAnalyser tool. While a response
streams, the backend produces cumulative snapshots in which every field may
still be missing; those are represented by ``PartialMessage`` and
``PartialMetadata``.

The ``__guides__`` mappings carry the per-field descriptions handed to the
backend when it builds its generation schema.
"""

from __future__ import annotations

import enum
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, ClassVar

__all__ = [
    "PartialMessage",
    "PartialMetadata",
    "Role",
    "StructuredMessage",
    "WebPageMetadata",
]


class Role(str, enum.Enum):
    """Author of a message."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"

    @classmethod
    def parse(cls, value: Any) -> Role:
        """Parse a role case-insensitively (backends may answer ``"Assistant"``)."""
        if isinstance(value, cls):
            return value
        raw = getattr(value, "value", value)
        try:
            return cls(str(raw).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown role: {value!r}") from None


def _read(snapshot: Any, name: str) -> Any:
    if isinstance(snapshot, Mapping):
        return snapshot.get(name)
    return getattr(snapshot, name, None)


def _optional_str(value: Any) -> str | None:
    return None if value is None else str(value)


@dataclass(frozen=True)
class WebPageMetadata:
    """Metadata of a web page, as extracted by the WebAnalyser tool."""

    __guides__: ClassVar[dict[str, str]] = {
        "title": "The title of the webpage",
        "thumbnail": "The thumbnail of the webpage",
        "description": "The description of the webpage",
    }

    title: str
    thumbnail: str | None = None
    description: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "thumbnail": self.thumbnail,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> WebPageMetadata:
        return cls(
            title=str(data.get("title") or ""),
            thumbnail=_optional_str(data.get("thumbnail")),
            description=_optional_str(data.get("description")),
        )


@dataclass(frozen=True)
class StructuredMessage:
    """A complete message as returned by a structured generation."""

    __guides__: ClassVar[dict[str, str]] = {
        "role": "The role of the user who sent the message",
        "content": "The content of the message",
        "metadata": "The metadata of the webpage sent back by the WebAnalyser tool",
    }

    role: Role
    content: str
    metadata: WebPageMetadata | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role.value,
            "content": self.content,
            "metadata": None if self.metadata is None else self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> StructuredMessage:
        metadata = data.get("metadata")
        return cls(
            role=Role.parse(data["role"]),
            content=str(data.get("content") or ""),
            metadata=None if metadata is None else WebPageMetadata.from_dict(metadata),
        )


@dataclass(frozen=True)
class PartialMetadata:
    """Snapshot of :class:`WebPageMetadata` while it is still being generated."""

    title: str | None = None
    thumbnail: str | None = None
    description: str | None = None

    @classmethod
    def from_snapshot(cls, snapshot: Any) -> PartialMetadata | None:
        if snapshot is None:
            return None
        if isinstance(snapshot, cls):
            return snapshot
        return cls(
            title=_optional_str(_read(snapshot, "title")),
            thumbnail=_optional_str(_read(snapshot, "thumbnail")),
            description=_optional_str(_read(snapshot, "description")),
        )


@dataclass(frozen=True)
class PartialMessage:
    """Cumulative snapshot of a :class:`StructuredMessage` mid-stream.

    Later snapshots supersede earlier ones for every field they carry; a field
    that is ``None`` has simply not been produced yet.
    """

    role: Role | None = None
    content: str | None = None
    metadata: PartialMetadata | None = None

    @classmethod
    def from_snapshot(cls, snapshot: Any) -> PartialMessage:
        """Build a partial from a mapping, an attribute object or a partial."""
        if isinstance(snapshot, cls):
            return snapshot
        if isinstance(snapshot, StructuredMessage):
            metadata = snapshot.metadata
            return cls(
                role=snapshot.role,
                content=snapshot.content,
                metadata=None if metadata is None else PartialMetadata(**metadata.to_dict()),
            )

        raw_role = _read(snapshot, "role")
        role = None
        if raw_role is not None:
            try:
                role = Role.parse(raw_role)
            except ValueError:
                role = None
        return cls(
            role=role,
            content=_optional_str(_read(snapshot, "content")),
            metadata=PartialMetadata.from_snapshot(_read(snapshot, "metadata")),
        )

    def to_structured(self) -> StructuredMessage:
        """Complete this snapshot, filling defaults for missing fields."""
        metadata = None
        if self.metadata is not None and self.metadata.title is not None:
            metadata = WebPageMetadata(
                title=self.metadata.title,
                thumbnail=self.metadata.thumbnail,
                description=self.metadata.description,
            )
        return StructuredMessage(
            role=self.role or Role.ASSISTANT,
            content=self.content or "",
            metadata=metadata,
        )
