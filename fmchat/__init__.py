"""
FMChat public API.

A chat core for on-device Apple Foundation Models: context budgeting,
structured streaming into stored messages, the WebAnalyser tool and rolling
conversation summaries. The Apple SDK is only imported when the default
backend is first used, so the package imports on any platform.
"""

from __future__ import annotations

from .applier import ApplyOutcome, ApplyResult, StreamApplier
from .budget import ContextBudgeter, PromptMode, estimate_size, select_prompt_mode
from .chat import ChatController
from .config import BudgetConfig, ChatConfig
from .coordinator import SessionCoordinator, SessionState
from .exceptions import (
    AppleFMSetupError,
    ContextOverflow,
    GenerationError,
    GuardrailViolation,
    PersistenceError,
    SessionBusyError,
)
from .models import Attachment, Conversation, Message
from .protocols import Availability, get_backend, set_backend
from .schema import PartialMessage, Role, StructuredMessage, WebPageMetadata
from .store import ChatStore
from .summary import SummaryUpdater
from .tools import WebAnalyserTool

__all__ = [
    "AppleFMSetupError",
    "ApplyOutcome",
    "ApplyResult",
    "Attachment",
    "Availability",
    "BudgetConfig",
    "ChatConfig",
    "ChatController",
    "ChatStore",
    "ContextBudgeter",
    "ContextOverflow",
    "Conversation",
    "GenerationError",
    "GuardrailViolation",
    "Message",
    "PartialMessage",
    "PersistenceError",
    "PromptMode",
    "Role",
    "SessionBusyError",
    "SessionCoordinator",
    "SessionState",
    "StreamApplier",
    "StructuredMessage",
    "SummaryUpdater",
    "WebAnalyserTool",
    "WebPageMetadata",
    "estimate_size",
    "get_backend",
    "select_prompt_mode",
    "set_backend",
]

__version__ = "0.1.0"
