"""
Context budgeting: decides how much of a conversation is sent to the backend.

Small conversations are sent in full (``PromptMode.FULL``). Once the estimated
size reaches the safety margin, prompts switch to ``PromptMode.COMPACT``: the
rolling summary plus the most recent message only. The estimate is a word
count over the serialized history; no backend tokenizer is assumed.
"""

from __future__ import annotations

import enum
import logging
from typing import TYPE_CHECKING

from .config import BudgetConfig

if TYPE_CHECKING:
    from .models import Conversation, Message

logger = logging.getLogger("fmchat")

__all__ = [
    "ContextBudgeter",
    "PromptMode",
    "estimate_size",
    "select_prompt_mode",
    "serialize_history",
]

_RESPOND_DIRECTIVE = "You should respond with the assistant role to the user's last message."
_SUMMARY_DIRECTIVE = (
    "Summarize the conversation in one or two sentences. Start directly with the topic; "
    "do not write phrases like 'The conversation is about'."
)
_SUMMARY_UPDATE_DIRECTIVE = (
    "Update the summary so it also covers the latest message. Answer with one or two "
    "sentences that start directly with the topic; do not write phrases like "
    "'The conversation is about'."
)


class PromptMode(enum.Enum):
    FULL = "full"
    COMPACT = "compact"


def _render(message: Message) -> str:
    return f"Role: {message.role.value}\nContent: {message.content}"


def serialize_history(conversation: Conversation) -> str:
    """Role and content of every message, oldest first, newline-joined."""
    return "\n".join(
        f"{message.role.value}: {message.content}" for message in conversation.sorted_messages
    )


def estimate_size(conversation: Conversation) -> int:
    """Word count of the serialized history."""
    return len(serialize_history(conversation).split())


def _quote(text: str) -> str:
    return "\n".join(f"> {line}" if line else ">" for line in text.splitlines() or [""])


class ContextBudgeter:
    """Selects the prompt shape and renders prompts for a conversation."""

    def __init__(self, config: BudgetConfig | None = None) -> None:
        self.config = config or BudgetConfig()

    def select_prompt_mode(self, conversation: Conversation) -> PromptMode:
        size = estimate_size(conversation)
        mode = PromptMode.FULL if size < self.config.safety_margin else PromptMode.COMPACT
        logger.debug(
            "[FMChat Budget] %d words (margin %d, limit %d) -> %s",
            size,
            self.config.safety_margin,
            self.config.context_limit,
            mode.name,
        )
        return mode

    def _has_summary(self, conversation: Conversation) -> bool:
        if conversation.summary and conversation.summary.strip():
            return True
        logger.warning(
            "[FMChat Budget] Conversation %s is over budget but has no summary yet; "
            "sending full history.",
            conversation.id,
        )
        return False

    def _full_history_block(self, conversation: Conversation) -> str:
        history = "\n\n".join(_render(message) for message in conversation.sorted_messages)
        return "Here is the conversation history:\n" + _quote(history)

    def _compact_block(self, conversation: Conversation) -> str:
        summary = (conversation.summary or "").strip()
        last = conversation.last_message
        latest = "" if last is None else _render(last)
        return "\n\n".join(
            [
                "Here is a summary of the conversation so far:\n" + _quote(summary),
                "Here is the latest message:\n" + _quote(latest),
            ]
        )

    def build_respond_prompt(self, conversation: Conversation) -> str:
        """Prompt asking for the next assistant message."""
        mode = self.select_prompt_mode(conversation)
        if mode is PromptMode.COMPACT and self._has_summary(conversation):
            context = self._compact_block(conversation)
        else:
            context = self._full_history_block(conversation)
        return f"{context}\n\n{_RESPOND_DIRECTIVE}"

    def build_summary_prompt(self, conversation: Conversation) -> str:
        """Prompt asking for a fresh or incrementally updated summary."""
        mode = self.select_prompt_mode(conversation)
        if mode is PromptMode.COMPACT and self._has_summary(conversation):
            return f"{self._compact_block(conversation)}\n\n{_SUMMARY_UPDATE_DIRECTIVE}"
        return f"{self._full_history_block(conversation)}\n\n{_SUMMARY_DIRECTIVE}"


def select_prompt_mode(
    conversation: Conversation, config: BudgetConfig | None = None
) -> PromptMode:
    """Module-level shortcut for :meth:`ContextBudgeter.select_prompt_mode`."""
    return ContextBudgeter(config).select_prompt_mode(conversation)
