"""
Stream application: copies streamed partial responses onto a stored message.

Partial snapshots are cumulative, so content is assigned rather than
appended. Attachment fields fill in monotonically: once set they are never
cleared by a later snapshot that lacks them. A failed stream leaves the
message in history with an error text instead of removing it.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from .exceptions import PersistenceError, describe_generation_error
from .models import Attachment, Message
from .schema import PartialMessage
from .store import StoreProtocol

logger = logging.getLogger("fmchat")

__all__ = ["ApplyOutcome", "ApplyResult", "StreamApplier", "apply_partial"]


class ApplyOutcome(enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ApplyResult:
    outcome: ApplyOutcome
    partials: int
    last: PartialMessage | None = None
    error: BaseException | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is ApplyOutcome.COMPLETED


def apply_partial(message: Message, partial: PartialMessage) -> None:
    """Copy every field present in *partial* onto *message*."""
    if partial.content is not None:
        message.content = partial.content
    if partial.metadata is not None:
        if message.attachment is None:
            message.attachment = Attachment()
        message.attachment.fill(partial.metadata)
        if message.attachment.is_empty:
            message.attachment = None


class StreamApplier:
    """Applies a partial-response stream to one in-flight assistant message."""

    def __init__(
        self,
        store: StoreProtocol,
        on_update: Callable[[Message], Any] | None = None,
    ) -> None:
        self.store = store
        self.on_update = on_update

    async def apply(self, stream: AsyncIterator[PartialMessage], message: Message) -> ApplyResult:
        """Consume *stream* into *message*, then finalize and persist it.

        Backend failures are recorded as the message content; the message is
        kept. Cancellation keeps whatever arrived so far and propagates.
        """
        count = 0
        last: PartialMessage | None = None
        try:
            try:
                async for partial in stream:
                    apply_partial(message, partial)
                    count += 1
                    last = partial
                    self._notify(message)
            finally:
                aclose = getattr(stream, "aclose", None)
                if aclose is not None:
                    await aclose()
        except asyncio.CancelledError:
            logger.info(
                "[FMChat Applier] Stream for message %s cancelled after %d partials",
                message.id,
                count,
            )
            self._finish(message)
            raise
        except Exception as exc:
            logger.warning(
                "[FMChat Applier] Stream for message %s failed after %d partials: %s",
                message.id,
                count,
                exc,
            )
            message.content = describe_generation_error(exc)
            self._notify(message)
            self._finish(message)
            return ApplyResult(ApplyOutcome.FAILED, count, last, exc)

        self._finish(message)
        return ApplyResult(ApplyOutcome.COMPLETED, count, last)

    def _notify(self, message: Message) -> None:
        if self.on_update is None:
            return
        try:
            self.on_update(message)
        except Exception as exc:
            logger.warning("[FMChat Applier] Update callback failed: %s", exc)

    def _finish(self, message: Message) -> None:
        message.finalize()
        try:
            self.store.save()
        except PersistenceError as exc:
            logger.warning("[FMChat Applier] Could not persist message %s: %s", message.id, exc)
