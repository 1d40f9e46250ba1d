"""
Session coordination: one backend session per open conversation.

The coordinator owns the backend session handle for exactly one
:class:`~fmchat.models.Conversation`. It builds prompts through the
:class:`~fmchat.budget.ContextBudgeter`, opens a streamed request and hands
the stream back to the caller. Progress is tracked as an explicit state
machine::

    IDLE -> REQUESTING -> STREAMING -> COMPLETED | FAILED

Consumers that need to react to progress subscribe to transitions instead of
polling. Only one request may be in flight at a time.
"""

from __future__ import annotations

import enum
import logging
import weakref
from collections.abc import AsyncGenerator, AsyncIterator, Callable, Sequence
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from .budget import ContextBudgeter
from .config import ChatConfig
from .exceptions import SessionBusyError, classify_generation_error
from .protocols import (
    Availability,
    ModelProtocol,
    SessionProtocol,
    ToolProtocol,
    check_availability,
    create_model,
    create_session,
)
from .schema import PartialMessage, StructuredMessage
from .tools import WebAnalyserTool

if TYPE_CHECKING:
    from .models import Conversation

logger = logging.getLogger("fmchat")

__all__ = ["SessionCoordinator", "SessionState", "StateListener", "TrackedStream"]

T = TypeVar("T")


class SessionState(enum.Enum):
    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


_BUSY_STATES = frozenset({SessionState.REQUESTING, SessionState.STREAMING})

StateListener = Callable[[SessionState, SessionState], Any]


class TrackedStream(Generic[T]):
    """Stream handed out by :meth:`SessionCoordinator.respond` and ``summarize``.

    Closing it before the first item is pulled marks the request failed, so
    the coordinator never stays busy on a stream that was never consumed.
    """

    def __init__(self, coordinator: SessionCoordinator, generator: AsyncGenerator[T, None]):
        self._coordinator = coordinator
        self._generator = generator
        self._started = False

    def __aiter__(self) -> TrackedStream[T]:
        return self

    async def __anext__(self) -> T:
        self._started = True
        return await self._generator.__anext__()

    async def aclose(self) -> None:
        if not self._started:
            self._started = True
            self._coordinator._abandon("stream closed before its first item")
        await self._generator.aclose()


class SessionCoordinator:
    """Owns the generation session for a single conversation.

    Args:
        conversation: The conversation this coordinator is bound to.
        model: Backend model; created from the active backend when omitted.
        tools: Tools registered with the session. Defaults to the
            WebAnalyser tool.
        config: Instructions and budget settings.
        budgeter: Prompt builder; built from ``config.budget`` when omitted.
    """

    def __init__(
        self,
        conversation: Conversation,
        *,
        model: ModelProtocol | None = None,
        tools: Sequence[ToolProtocol] | None = None,
        config: ChatConfig | None = None,
        budgeter: ContextBudgeter | None = None,
    ) -> None:
        self.conversation = conversation
        self.config = config or ChatConfig()
        self.budgeter = budgeter or ContextBudgeter(self.config.budget)
        self.tools: tuple[ToolProtocol, ...] = tuple(
            [WebAnalyserTool(self.config)] if tools is None else tools
        )
        self._model = model
        self._session: SessionProtocol | None = None
        self._state = SessionState.IDLE
        self._listeners: list[StateListener] = []
        self._active: weakref.ref[TrackedStream[Any]] | None = None
        self._request = 0

    # -- state machine -------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_busy(self) -> bool:
        return self._state in _BUSY_STATES and self._stream_alive()

    def _stream_alive(self) -> bool:
        return self._active is not None and self._active() is not None

    def subscribe(self, listener: StateListener) -> None:
        """Call *listener(old, new)* on every state transition."""
        self._listeners.append(listener)

    def unsubscribe(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _transition(self, new_state: SessionState) -> None:
        old_state = self._state
        self._state = new_state
        logger.debug(
            "[FMChat Coordinator] %s: %s -> %s",
            self.conversation.id,
            old_state.name,
            new_state.name,
        )
        for listener in list(self._listeners):
            try:
                listener(old_state, new_state)
            except Exception as exc:
                logger.warning("[FMChat Coordinator] State listener failed: %s", exc)

    # -- backend handle ------------------------------------------------------

    @property
    def model(self) -> ModelProtocol:
        if self._model is None:
            self._model = create_model()
        return self._model

    def _ensure_session(self) -> SessionProtocol:
        if self._session is None:
            self._session = create_session(
                instructions=self.config.instructions,
                model=self.model,
                tools=self.tools,
            )
        return self._session

    def availability(self) -> Availability:
        return check_availability(self.model)

    def close(self) -> None:
        """Release the backend session handle."""
        self._session = None

    def prewarm(self) -> None:
        """Hint to the backend that a request is coming. Never raises."""
        try:
            if not self.availability():
                return
            self._ensure_session().prewarm()
        except Exception as exc:
            logger.warning("[FMChat Coordinator] Prewarm failed: %s", exc)

    # -- requests ------------------------------------------------------------

    async def respond(self) -> TrackedStream[PartialMessage] | None:
        """Stream the assistant's reply to the conversation, or ``None`` if unavailable.

        The coordinator stays busy until the returned stream is exhausted,
        closed or dropped.
        """
        session = self._begin("respond")
        if session is None:
            return None
        prompt = self.budgeter.build_respond_prompt(self.conversation)
        return self._start(
            lambda: session.stream_response(prompt, generating=StructuredMessage),
            PartialMessage.from_snapshot,
        )

    async def summarize(self) -> TrackedStream[str] | None:
        """Stream a one-to-two sentence summary, or ``None`` if unavailable."""
        session = self._begin("summarize")
        if session is None:
            return None
        prompt = self.budgeter.build_summary_prompt(self.conversation)
        return self._start(lambda: session.stream_response(prompt), str)

    def _begin(self, operation: str) -> SessionProtocol | None:
        if self.is_busy:
            raise SessionBusyError(
                f"Cannot {operation}: a request is already {self._state.value} "
                f"for conversation {self.conversation.id}"
            )
        if self._state in _BUSY_STATES:
            self._abandon("previous stream was dropped unfinished")
        availability = self.availability()
        if not availability:
            logger.info(
                "[FMChat Coordinator] Backend unavailable for %s: %s",
                operation,
                availability.reason,
            )
            return None
        return self._ensure_session()

    def _start(
        self, open_stream: Callable[[], AsyncIterator[Any]], convert: Callable[[Any], T]
    ) -> TrackedStream[T]:
        self._request += 1
        self._transition(SessionState.REQUESTING)
        stream = TrackedStream(self, self._track(self._request, open_stream, convert))
        self._active = weakref.ref(stream)
        return stream

    def _abandon(self, reason: str) -> None:
        if self._state in _BUSY_STATES:
            logger.info("[FMChat Coordinator] Request abandoned: %s", reason)
            self._transition(SessionState.FAILED)

    def _settle(self, request: int, new_state: SessionState) -> None:
        # A stale stream finalized after a newer request started must not touch state.
        if request == self._request:
            self._transition(new_state)

    async def _track(
        self,
        request: int,
        open_stream: Callable[[], AsyncIterator[Any]],
        convert: Callable[[Any], T],
    ) -> AsyncGenerator[T, None]:
        """Relay a backend stream, converting snapshots and driving state transitions."""
        finished = False
        try:
            async for snapshot in open_stream():
                if self._state is SessionState.REQUESTING:
                    self._settle(request, SessionState.STREAMING)
                yield convert(snapshot)
            finished = True
            self._settle(request, SessionState.COMPLETED)
        except Exception as exc:
            finished = True
            self._settle(request, SessionState.FAILED)
            error = classify_generation_error(exc)
            if error is exc:
                raise
            raise error from exc
        finally:
            # Consumer stopped early (closed or cancelled).
            if not finished:
                self._settle(request, SessionState.FAILED)
