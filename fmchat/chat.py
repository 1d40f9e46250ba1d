"""
Per-turn chat flow.

One call to :meth:`ChatController.send` runs a full exchange:

1. append the user message and save it (before any request is issued);
2. open the assistant stream and append a placeholder assistant message;
3. apply the stream to the placeholder, finalize and save it;
4. refresh the rolling summary, after the assistant message is final.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from .applier import ApplyOutcome, ApplyResult, StreamApplier
from .exceptions import PersistenceError, SessionBusyError, describe_generation_error
from .models import Message, utc_now
from .schema import Role
from .summary import SummaryUpdater

if TYPE_CHECKING:
    from .coordinator import SessionCoordinator
    from .models import Conversation
    from .store import StoreProtocol

logger = logging.getLogger("fmchat")

__all__ = ["PLACEHOLDER_CONTENT", "ChatController"]

PLACEHOLDER_CONTENT = "..."


class ChatController:
    """Drives user turns for one conversation.

    Sends are serialized: calling :meth:`send` while a previous send is still
    running raises :class:`~fmchat.exceptions.SessionBusyError`.
    """

    def __init__(
        self,
        conversation: Conversation,
        coordinator: SessionCoordinator,
        store: StoreProtocol,
        *,
        applier: StreamApplier | None = None,
        summary_updater: SummaryUpdater | None = None,
    ) -> None:
        if coordinator.conversation is not conversation:
            raise ValueError("coordinator is bound to a different conversation")
        self.conversation = conversation
        self.coordinator = coordinator
        self.store = store
        self.applier = applier or StreamApplier(store)
        self.summary_updater = summary_updater or SummaryUpdater(coordinator, store)
        self.last_result: ApplyResult | None = None
        self._sending = False

    @property
    def is_sending(self) -> bool:
        return self._sending

    def prewarm(self) -> None:
        self.coordinator.prewarm()

    async def send(self, text: str) -> Message | None:
        """Run one exchange and return the finalized assistant message.

        Returns ``None`` when *text* is blank or the backend is unavailable;
        in the latter case nothing is appended or saved. *text* is stored
        as given.
        """
        if self._sending:
            raise SessionBusyError("A message is already being sent in this conversation")
        if not text.strip():
            return None

        availability = self.coordinator.availability()
        if not availability:
            logger.info("[FMChat] Not sending; backend unavailable: %s", availability.reason)
            return None

        self._sending = True
        try:
            return await self._exchange(text)
        finally:
            self._sending = False

    async def _exchange(self, content: str) -> Message | None:
        user_message = self.conversation.append(
            Message(content=content, role=Role.USER, timestamp=self._next_timestamp())
        )
        user_message.finalize()
        self._save("user message")

        try:
            stream = await self.coordinator.respond()
        except SessionBusyError:
            raise
        except Exception as exc:
            # Opening the backend session failed; record it inline like a stream failure.
            logger.warning("[FMChat] Could not start a response: %s", exc)
            assistant_message = self._append_assistant(describe_generation_error(exc))
            assistant_message.finalize()
            self._save("assistant message")
            self.last_result = ApplyResult(ApplyOutcome.FAILED, 0, error=exc)
            await self.summary_updater.refresh(self.conversation)
            return assistant_message
        if stream is None:
            return None

        assistant_message = self._append_assistant(PLACEHOLDER_CONTENT)
        self.last_result = await self.applier.apply(stream, assistant_message)
        await self.summary_updater.refresh(self.conversation)
        return assistant_message

    def _append_assistant(self, content: str) -> Message:
        return self.conversation.append(
            Message(content=content, role=Role.ASSISTANT, timestamp=self._next_timestamp())
        )

    def _next_timestamp(self) -> datetime:
        """Current time, nudged forward so a turn never sorts before earlier messages."""
        now = utc_now()
        last = self.conversation.last_message
        if last is not None and now <= last.timestamp:
            now = last.timestamp + timedelta(microseconds=1)
        return now

    def _save(self, what: str) -> None:
        try:
            self.store.save()
        except PersistenceError as exc:
            logger.warning("[FMChat] Could not persist %s: %s", what, exc)
