"""Tests for fmchat.exceptions: setup diagnostics and generation error taxonomy."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from fmchat.exceptions import (
    AppleFMSetupError,
    ContextOverflow,
    GenerationError,
    GuardrailViolation,
    UnknownGenerationError,
    UnsupportedGeneration,
    classify_generation_error,
    describe_generation_error,
    ensure_model_available,
    troubleshooting_message,
)

# ========================================================================
# Setup diagnostics
# ========================================================================


def test_troubleshooting_message_includes_context_reason_and_steps():
    message = troubleshooting_message("chat.py", reason="boom")
    assert "[chat.py] Apple Foundation Models setup check failed." in message
    assert "Reason: boom" in message
    assert "pip install -e '.[apple]'" in message
    assert "fmchat doctor" in message


def test_troubleshooting_message_defaults_blank_context():
    assert troubleshooting_message("   ").startswith("[fmchat]")


def test_ensure_model_available_raises_custom_error_when_unavailable():
    model = MagicMock()
    model.is_available.return_value = (False, "model not downloaded")

    with pytest.raises(AppleFMSetupError, match="Foundation Model is not available"):
        ensure_model_available(model, context="unit_test")


def test_ensure_model_available_wraps_availability_check_failure():
    model = MagicMock()
    model.is_available.side_effect = OSError("xpc connection lost")

    with pytest.raises(AppleFMSetupError, match="xpc connection lost"):
        ensure_model_available(model, context="unit_test")


# ========================================================================
# Generation error taxonomy
# ========================================================================


class ExceededContextWindowSize(Exception):
    pass


class GuardrailViolationError(Exception):
    pass


@pytest.mark.parametrize(
    ("exc", "expected"),
    [
        (ExceededContextWindowSize("4096 tokens"), ContextOverflow),
        (RuntimeError("Context window size exceeded"), ContextOverflow),
        (GuardrailViolationError("blocked"), GuardrailViolation),
        (RuntimeError("Detected unsafe content in prompt"), GuardrailViolation),
        (RuntimeError("unsupportedLanguageOrLocale"), UnsupportedGeneration),
        (RuntimeError("socket closed"), UnknownGenerationError),
    ],
)
def test_classify_generation_error_maps_backend_errors(exc, expected):
    error = classify_generation_error(exc)

    assert type(error) is expected
    assert error.__cause__ is exc


def test_classify_generation_error_keeps_taxonomy_errors():
    error = GuardrailViolation("already classified")
    assert classify_generation_error(error) is error


def test_classify_generation_error_uses_type_name_for_empty_message():
    error = classify_generation_error(TimeoutError())
    assert isinstance(error, UnknownGenerationError)
    assert str(error) == "TimeoutError"


def test_describe_generation_error_uses_user_message_for_known_kinds():
    text = describe_generation_error(GuardrailViolationError("blocked"))
    assert text == f"Error: {GuardrailViolation.user_message}"


def test_describe_generation_error_keeps_unknown_detail():
    assert describe_generation_error(RuntimeError("socket closed")) == "Error: socket closed"


def test_generation_errors_share_a_base():
    for error_cls in (ContextOverflow, GuardrailViolation, UnsupportedGeneration):
        assert issubclass(error_cls, GenerationError)
        assert error_cls.user_message != GenerationError.user_message
