"""
Error types and setup diagnostics for FMChat.

Setup problems (SDK missing, model not downloaded) raise
:class:`AppleFMSetupError` with a troubleshooting checklist. Generation
failures reported by the backend are normalised into the
:class:`GenerationError` family so callers can turn them into inline error
text without knowing which backend produced them.
"""

from __future__ import annotations

from typing import Any, NoReturn

__all__ = [
    "AppleFMSetupError",
    "ContextOverflow",
    "GenerationError",
    "GuardrailViolation",
    "MessageFinalizedError",
    "PersistenceError",
    "SessionBusyError",
    "UnknownGenerationError",
    "UnsupportedGeneration",
    "classify_generation_error",
    "describe_generation_error",
    "ensure_model_available",
    "raise_setup_error",
    "troubleshooting_message",
]


class AppleFMSetupError(RuntimeError):
    """Raised when Apple FM SDK/model setup is missing or unavailable."""


class SessionBusyError(RuntimeError):
    """Raised when a second request is issued while one is still in flight."""


class MessageFinalizedError(RuntimeError):
    """Raised when a finalized message is mutated."""


class PersistenceError(RuntimeError):
    """Raised by the store when a write cannot be committed."""


# ---------------------------------------------------------------------------
# Generation error taxonomy
# ---------------------------------------------------------------------------


class GenerationError(RuntimeError):
    """Base class for failures reported by the backend while generating."""

    user_message = "The model could not complete this response."


class GuardrailViolation(GenerationError):
    user_message = "The request was blocked by the model's safety guardrails."


class ContextOverflow(GenerationError):
    user_message = "The conversation is too long for the model's context window."


class UnsupportedGeneration(GenerationError):
    user_message = "The model does not support this request (language, locale or schema)."


class UnknownGenerationError(GenerationError):
    pass


# Matched against the exception type name and message, lower-cased.
_ERROR_MARKERS: tuple[tuple[type[GenerationError], tuple[str, ...]], ...] = (
    (
        ContextOverflow,
        ("exceededcontextwindowsize", "context window size exceeded", "context window"),
    ),
    (GuardrailViolation, ("guardrailviolation", "guardrail", "unsafe content")),
    (UnsupportedGeneration, ("unsupportedlanguage", "unsupportedguide", "unsupported")),
)


def classify_generation_error(exc: BaseException) -> GenerationError:
    """Map an arbitrary backend exception onto the generation error taxonomy.

    Exceptions that already belong to the taxonomy are returned unchanged.
    The original exception is attached as ``__cause__``.
    """
    if isinstance(exc, GenerationError):
        return exc

    haystack = f"{type(exc).__name__} {exc}".lower()
    for error_cls, markers in _ERROR_MARKERS:
        if any(marker in haystack for marker in markers):
            error: GenerationError = error_cls(str(exc) or type(exc).__name__)
            break
    else:
        error = UnknownGenerationError(str(exc) or type(exc).__name__)
    error.__cause__ = exc
    return error


def describe_generation_error(exc: BaseException) -> str:
    """Human-readable text shown in place of a failed assistant message."""
    error = classify_generation_error(exc)
    if isinstance(error, UnknownGenerationError):
        return f"Error: {error}"
    return f"Error: {error.user_message}"


# ---------------------------------------------------------------------------
# Setup diagnostics
# ---------------------------------------------------------------------------


def troubleshooting_message(context: str, reason: str | None = None) -> str:
    """Build a standard setup troubleshooting message."""
    label = context.strip() if context.strip() else "fmchat"
    lines = [f"[{label}] Apple Foundation Models setup check failed."]
    if reason:
        lines.append(f"Reason: {reason}")
    lines.extend(
        [
            "",
            "Troubleshooting checklist:",
            "1. Use macOS 26+ on Apple Silicon (M-series) with Apple Intelligence enabled.",
            "2. Install dependencies: pip install -e '.[apple]'",
            "3. Verify SDK import:",
            '   python -c "import apple_fm_sdk as fm; print(fm.__name__)"',
            "4. Verify model availability:",
            '   python -c "import apple_fm_sdk as fm; m=fm.SystemLanguageModel(); print(m.is_available())"',
            "5. Run diagnostics: fmchat doctor",
        ]
    )
    return "\n".join(lines)


def raise_setup_error(
    context: str,
    *,
    reason: str | None = None,
    exc: BaseException | None = None,
) -> NoReturn:
    """Raise :class:`AppleFMSetupError` with standardized diagnostics."""
    computed_reason = reason
    if computed_reason is None and exc is not None:
        computed_reason = f"{type(exc).__name__}: {exc}"

    error = AppleFMSetupError(troubleshooting_message(context, reason=computed_reason))
    if exc is not None:
        raise error from exc
    raise error


def ensure_model_available(model: Any, *, context: str) -> None:
    """Validate that a model can be used for local inference."""
    try:
        available, reason = model.is_available()
    except Exception as exc:
        raise_setup_error(context, exc=exc)

    if not available:
        detail = f"Foundation Model is not available: {reason}"
        raise_setup_error(context, reason=detail)

