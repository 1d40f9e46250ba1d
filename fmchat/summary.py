"""Rolling summary refresh, run after every completed exchange."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .exceptions import PersistenceError

if TYPE_CHECKING:
    from .coordinator import SessionCoordinator
    from .models import Conversation
    from .store import StoreProtocol

logger = logging.getLogger("fmchat")

__all__ = ["SummaryUpdater"]


class SummaryUpdater:
    """Asks the coordinator for an updated summary and stores it.

    Never raises for backend or persistence failures: the previous summary
    stays in place and the problem is logged.
    """

    def __init__(self, coordinator: SessionCoordinator, store: StoreProtocol) -> None:
        self.coordinator = coordinator
        self.store = store

    async def refresh(self, conversation: Conversation) -> None:
        try:
            stream = await self.coordinator.summarize()
        except Exception as exc:
            logger.warning(
                "[FMChat Summary] Could not start summary for %s: %s", conversation.id, exc
            )
            return
        if stream is None:
            logger.info(
                "[FMChat Summary] Backend unavailable; keeping previous summary for %s",
                conversation.id,
            )
            return

        latest = ""
        try:
            async for snapshot in stream:
                latest = snapshot
        except Exception as exc:
            logger.warning(
                "[FMChat Summary] Summary generation failed for %s: %s", conversation.id, exc
            )
            return
        finally:
            await stream.aclose()

        summary = latest.strip()
        if not summary:
            logger.warning("[FMChat Summary] Backend returned an empty summary; ignoring it")
            return

        conversation.summary = summary
        try:
            self.store.save()
        except PersistenceError as exc:
            logger.warning("[FMChat Summary] Could not persist summary: %s", exc)
