"""Tests for fmchat.coordinator.SessionCoordinator."""

from __future__ import annotations

import gc

import pytest

from fmchat.config import ChatConfig
from fmchat.coordinator import SessionCoordinator, SessionState
from fmchat.exceptions import GuardrailViolation, SessionBusyError, UnknownGenerationError
from fmchat.schema import PartialMessage, Role, StructuredMessage
from fmchat.tools import WebAnalyserTool

from .conftest import make_conversation


def _coordinator(conversation=None, **kwargs):
    conversation = conversation or make_conversation(("user", "Hello"))
    return SessionCoordinator(conversation, tools=kwargs.pop("tools", []), **kwargs)


async def _drain(stream):
    return [item async for item in stream]


class TestAvailability:
    async def test_respond_returns_none_when_unavailable(self, unavailable_backend):
        coordinator = _coordinator()

        assert await coordinator.respond() is None
        assert coordinator.state is SessionState.IDLE
        assert unavailable_backend.sessions == []

    async def test_summarize_returns_none_when_unavailable(self, unavailable_backend):
        assert await _coordinator().summarize() is None

    def test_availability_reports_reason(self, unavailable_backend):
        availability = _coordinator().availability()
        assert not availability
        assert availability.reason == "Model not downloaded"


class TestRespond:
    async def test_streams_partials_with_structured_schema(self, fake_backend):
        fake_backend.script({"content": "Hel"}, {"role": "assistant", "content": "Hello"})
        coordinator = _coordinator()

        partials = await _drain(await coordinator.respond())

        assert partials == [
            PartialMessage(content="Hel"),
            PartialMessage(role=Role.ASSISTANT, content="Hello"),
        ]
        prompt, generating = fake_backend.session.prompts[0]
        assert generating is StructuredMessage
        assert "Content: Hello" in prompt

    async def test_state_transitions(self, fake_backend):
        fake_backend.script({"content": "a"}, {"content": "ab"})
        coordinator = _coordinator()
        transitions = []
        coordinator.subscribe(lambda old, new: transitions.append((old, new)))

        await _drain(await coordinator.respond())

        assert transitions == [
            (SessionState.IDLE, SessionState.REQUESTING),
            (SessionState.REQUESTING, SessionState.STREAMING),
            (SessionState.STREAMING, SessionState.COMPLETED),
        ]
        assert not coordinator.is_busy

    async def test_instructions_go_to_session_not_prompt(self, fake_backend):
        fake_backend.script({"content": "ok"})
        config = ChatConfig(instructions="You are a terse assistant.")
        coordinator = _coordinator(config=config)

        await _drain(await coordinator.respond())

        session = fake_backend.session
        assert session.instructions == "You are a terse assistant."
        assert "terse" not in session.prompts[0][0]

    async def test_busy_while_stream_is_open(self, fake_backend):
        fake_backend.script({"content": "a"}, {"content": "ab"})
        coordinator = _coordinator()
        stream = await coordinator.respond()

        assert coordinator.state is SessionState.REQUESTING
        with pytest.raises(SessionBusyError):
            await coordinator.respond()
        with pytest.raises(SessionBusyError):
            await coordinator.summarize()

        await _drain(stream)
        assert coordinator.state is SessionState.COMPLETED

    async def test_session_is_reused_across_requests(self, fake_backend):
        fake_backend.script({"content": "one"}).script("summary")
        coordinator = _coordinator()

        await _drain(await coordinator.respond())
        await _drain(await coordinator.summarize())

        assert len(fake_backend.sessions) == 1
        assert len(fake_backend.session.prompts) == 2

    async def test_empty_stream_completes(self, fake_backend):
        fake_backend.script()
        coordinator = _coordinator()

        assert await _drain(await coordinator.respond()) == []
        assert coordinator.state is SessionState.COMPLETED

    async def test_backend_failure_is_classified(self, fake_backend):
        fake_backend.script({"content": "Hel"}, RuntimeError("guardrailViolation: unsafe"))
        coordinator = _coordinator()
        stream = await coordinator.respond()

        received = []
        with pytest.raises(GuardrailViolation) as exc_info:
            async for partial in stream:
                received.append(partial)

        assert received == [PartialMessage(content="Hel")]
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert coordinator.state is SessionState.FAILED
        assert not coordinator.is_busy

    async def test_unknown_failure_before_first_partial(self, fake_backend):
        fake_backend.script(ConnectionError("xpc interrupted"))
        coordinator = _coordinator()

        with pytest.raises(UnknownGenerationError, match="xpc interrupted"):
            await _drain(await coordinator.respond())
        assert coordinator.state is SessionState.FAILED

    async def test_closing_stream_early_releases_the_coordinator(self, fake_backend):
        fake_backend.script({"content": "a"}, {"content": "ab"}, {"content": "abc"})
        coordinator = _coordinator()
        stream = await coordinator.respond()

        await stream.__anext__()
        await stream.aclose()

        assert coordinator.state is SessionState.FAILED
        assert not coordinator.is_busy

    async def test_closing_stream_before_first_item_releases_the_coordinator(
        self, fake_backend
    ):
        fake_backend.script({"content": "never read"})
        coordinator = _coordinator()

        stream = await coordinator.respond()
        await stream.aclose()

        assert coordinator.state is SessionState.FAILED
        assert not coordinator.is_busy
        assert await _drain(await coordinator.respond()) == [PartialMessage(content="never read")]
        assert coordinator.state is SessionState.COMPLETED

    async def test_dropped_stream_does_not_block_next_request(self, fake_backend):
        fake_backend.script("second")
        coordinator = _coordinator()

        stream = await coordinator.respond()
        assert coordinator.is_busy
        del stream
        gc.collect()

        assert not coordinator.is_busy
        assert await _drain(await coordinator.summarize()) == ["second"]
        assert coordinator.state is SessionState.COMPLETED

    async def test_stale_stream_cannot_change_newer_request_state(self, fake_backend):
        fake_backend.script({"content": "a"}, {"content": "ab"}).script("summary")
        coordinator = _coordinator()
        first = await coordinator.respond()
        await first.__anext__()
        first_generator = first._generator
        del first
        gc.collect()

        second = await coordinator.summarize()
        assert coordinator.state is SessionState.REQUESTING
        await first_generator.aclose()

        assert coordinator.state is SessionState.REQUESTING
        assert await _drain(second) == ["summary"]
        assert coordinator.state is SessionState.COMPLETED

    async def test_listener_errors_do_not_break_the_request(self, fake_backend):
        fake_backend.script({"content": "ok"})
        coordinator = _coordinator()

        def broken(old, new):
            raise RuntimeError("listener bug")

        coordinator.subscribe(broken)
        assert await _drain(await coordinator.respond()) == [PartialMessage(content="ok")]

        coordinator.unsubscribe(broken)
        assert coordinator.state is SessionState.COMPLETED


class TestSummarize:
    async def test_streams_plain_text(self, fake_backend):
        fake_backend.script("Trip", "Trip planning.")
        coordinator = _coordinator()

        assert await _drain(await coordinator.summarize()) == ["Trip", "Trip planning."]
        prompt, generating = fake_backend.session.prompts[0]
        assert generating is None
        assert "one or two sentences" in prompt


class TestSessionSetup:
    async def test_default_tools_register_web_analyser(self, fake_backend):
        coordinator = SessionCoordinator(make_conversation(("user", "Hi")))
        fake_backend.script({"content": "Hey"})

        await _drain(await coordinator.respond())

        (tool,) = fake_backend.session.tools
        assert isinstance(tool, WebAnalyserTool)

    def test_prewarm_creates_session_and_prewarms(self, fake_backend):
        coordinator = _coordinator()
        coordinator.prewarm()

        assert fake_backend.session.prewarm_calls == 1

    def test_prewarm_is_noop_when_unavailable(self, unavailable_backend):
        _coordinator().prewarm()
        assert unavailable_backend.sessions == []

    def test_prewarm_never_raises(self, fake_backend, monkeypatch):
        def fail(self):
            raise RuntimeError("no session")

        monkeypatch.setattr(SessionCoordinator, "_ensure_session", fail)
        _coordinator().prewarm()

    async def test_close_drops_session(self, fake_backend):
        fake_backend.script({"content": "a"}).script({"content": "b"})
        coordinator = _coordinator()

        await _drain(await coordinator.respond())
        coordinator.close()
        await _drain(await coordinator.respond())

        assert len(fake_backend.sessions) == 2
