"""
Pluggable backend protocols for FMChat.

Defines structural subtyping (typing.Protocol) interfaces so the chat core can
work with any backend that satisfies the contract, not just Apple FM SDK.

Usage:
    from fmchat.protocols import set_backend, get_backend

    # Default: AppleFMBackend wrapping apple_fm_sdk
    backend = get_backend()

    # Swap in a custom backend for testing or alternative providers:
    set_backend(my_custom_backend)
"""

from __future__ import annotations

import dataclasses
import enum
import importlib
import json
import logging
import types
import typing
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from functools import lru_cache
from typing import TYPE_CHECKING, Any, Protocol, cast, runtime_checkable

from .exceptions import raise_setup_error

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger("fmchat")

__all__ = [
    "AppleFMBackend",
    "AppleFMModel",
    "AppleFMSession",
    "Availability",
    "ModelProtocol",
    "SessionFactory",
    "SessionProtocol",
    "ToolProtocol",
    "check_availability",
    "create_model",
    "create_session",
    "get_backend",
    "set_backend",
]


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


@runtime_checkable
class ModelProtocol(Protocol):
    """Structural interface for a language model availability check."""

    def is_available(self) -> tuple[bool, str | None]:
        """Return (available, reason_if_not)."""
        ...


@runtime_checkable
class SessionProtocol(Protocol):
    """Structural interface for a streaming language model session."""

    def stream_response(self, prompt: str, generating: type | None = None) -> AsyncIterator[Any]:
        """Stream cumulative snapshots of a plain (or structured) response."""
        ...

    def prewarm(self) -> None:
        """Hint that a request is imminent."""
        ...


@runtime_checkable
class ToolProtocol(Protocol):
    """A capability the backend may call while generating."""

    name: str
    description: str
    arguments: type

    async def call(self, arguments: Mapping[str, Any]) -> Any: ...


@runtime_checkable
class SessionFactory(Protocol):
    """Callable that creates a SessionProtocol from a model, instructions and tools."""

    def __call__(
        self, model: ModelProtocol, instructions: str, tools: Sequence[ToolProtocol] = ()
    ) -> SessionProtocol: ...


@dataclass(frozen=True)
class Availability:
    """Result of a backend availability check."""

    available: bool
    reason: str | None = None

    def __bool__(self) -> bool:
        return self.available


def check_availability(model: ModelProtocol) -> Availability:
    """Ask *model* whether it can generate; a check that raises counts as unavailable."""
    try:
        available, reason = model.is_available()
    except Exception as exc:
        logger.warning("[FMChat] Availability check failed: %s", exc)
        return Availability(False, f"{type(exc).__name__}: {exc}")
    return Availability(bool(available), None if reason is None else str(reason))


# ---------------------------------------------------------------------------
# Apple FM concrete backend
# ---------------------------------------------------------------------------


@lru_cache(maxsize=1)
def _import_apple_fm_sdk() -> Any:
    """Import ``apple_fm_sdk`` lazily so protocol import does not hard-require it."""
    try:
        return importlib.import_module("apple_fm_sdk")
    except ModuleNotFoundError as exc:
        if exc.name == "apple_fm_sdk":
            raise_setup_error("fmchat", exc=exc)
        raise


def _sdk_annotation(annotation: Any) -> Any:
    """Translate a schema field type into one the SDK can generate."""
    origin = typing.get_origin(annotation)
    if origin in (typing.Union, types.UnionType):
        members = [arg for arg in typing.get_args(annotation) if arg is not type(None)]
        if len(members) == 1:
            return typing.Optional[_sdk_annotation(members[0])]  # noqa: UP045
        return annotation
    if isinstance(annotation, type) and issubclass(annotation, enum.Enum):
        # Enums are generated as their raw value and parsed back by the schema.
        return str
    if dataclasses.is_dataclass(annotation):
        return _generable_schema(cast("type", annotation))
    return annotation


@lru_cache(maxsize=None)
def _generable_schema(schema: type) -> Any:
    """Build an ``@fm.generable`` twin of a plain dataclass schema."""
    fm_sdk = _import_apple_fm_sdk()
    hints = typing.get_type_hints(schema)
    guides: dict[str, str] = getattr(schema, "__guides__", {})
    annotations: dict[str, Any] = {}
    namespace: dict[str, Any] = {
        "__module__": schema.__module__,
        "__doc__": schema.__doc__,
        "__annotations__": annotations,
    }
    for field in dataclasses.fields(schema):
        annotations[field.name] = _sdk_annotation(hints[field.name])
        namespace[field.name] = fm_sdk.guide(guides.get(field.name, field.name))
    twin = type(schema.__name__, (), namespace)
    return fm_sdk.generable((schema.__doc__ or schema.__name__).strip())(twin)


def _read_argument(args: Any, name: str) -> Any:
    if isinstance(args, Mapping):
        return args.get(name)
    value_fn = getattr(args, "value", None)
    if callable(value_fn):
        return value_fn(str, for_property=name)
    return getattr(args, name, None)


def _bridge_tool(fm_sdk: Any, tool: ToolProtocol) -> Any:
    """Wrap one of our tools in an SDK ``Tool`` subclass."""
    arguments_twin = _generable_schema(tool.arguments)
    field_names = [field.name for field in dataclasses.fields(tool.arguments)]

    class _BridgedTool(fm_sdk.Tool):
        name = tool.name
        description = tool.description

        @property
        def arguments_schema(self) -> Any:
            return arguments_twin.generation_schema()

        async def call(self, args: Any) -> str:
            values = {name: _read_argument(args, name) for name in field_names}
            result = await tool.call(values)
            if isinstance(result, str):
                return result
            return json.dumps(result.to_dict(), ensure_ascii=False)

    return _BridgedTool()


class AppleFMModel:
    """Wraps ``apple_fm_sdk.SystemLanguageModel`` behind :class:`ModelProtocol`."""

    def __init__(self) -> None:
        fm_sdk = _import_apple_fm_sdk()
        self._model = fm_sdk.SystemLanguageModel()

    def is_available(self) -> tuple[bool, str | None]:
        available, reason = self._model.is_available()
        return available, None if reason is None else str(reason)

    @property
    def raw(self) -> Any:
        """Access the underlying SDK model object."""
        return self._model


class AppleFMSession:
    """Wraps ``apple_fm_sdk.LanguageModelSession`` behind :class:`SessionProtocol`."""

    def __init__(
        self, model: ModelProtocol, instructions: str, tools: Sequence[ToolProtocol] = ()
    ) -> None:
        fm_sdk = _import_apple_fm_sdk()
        # Accept either our wrapper or the raw SDK model
        raw_model = cast("Any", getattr(model, "raw", model))
        kwargs: dict[str, Any] = {"model": raw_model, "instructions": instructions}
        if tools:
            kwargs["tools"] = [_bridge_tool(fm_sdk, tool) for tool in tools]
        self._session = fm_sdk.LanguageModelSession(**kwargs)

    def prewarm(self) -> None:
        prewarm = getattr(self._session, "prewarm", None)
        if callable(prewarm):
            prewarm()

    async def stream_response(
        self, prompt: str, generating: type | None = None
    ) -> AsyncIterator[Any]:
        if generating is None:
            stream = self._session.stream_response(prompt)
        else:
            stream = self._session.stream_response(
                prompt, generating=_generable_schema(generating)
            )
        async for snapshot in stream:
            yield snapshot


class AppleFMBackend:
    """
    Default backend that delegates to ``apple_fm_sdk``.

    Satisfies both :class:`ModelProtocol` (via ``create_model``) and
    :class:`SessionFactory` (via ``__call__``).
    """

    def create_model(self) -> AppleFMModel:
        """Create a new :class:`AppleFMModel`."""
        return AppleFMModel()

    def __call__(
        self, model: ModelProtocol, instructions: str, tools: Sequence[ToolProtocol] = ()
    ) -> AppleFMSession:
        """Create a new :class:`AppleFMSession` (satisfies :class:`SessionFactory`)."""
        return AppleFMSession(model, instructions, tools)


# ---------------------------------------------------------------------------
# Module-level backend registry
# ---------------------------------------------------------------------------

_backend: Any = AppleFMBackend()


def set_backend(backend: Any) -> None:
    """Replace the active backend (module-level singleton)."""
    global _backend
    _backend = backend
    logger.info("[FMChat] Backend set to %s", type(backend).__name__)


def get_backend() -> Any:
    """Return the currently active backend."""
    return _backend


def _create_model_from_backend(backend: Any) -> ModelProtocol:
    create_model_fn = getattr(backend, "create_model", None)
    if not callable(create_model_fn):
        raise TypeError(f"Active backend must provide create_model(); got {type(backend).__name__}")
    return cast("ModelProtocol", create_model_fn())


def create_model() -> ModelProtocol:
    """Create a model using the currently active backend."""
    return _create_model_from_backend(get_backend())


def create_session(
    instructions: str,
    model: ModelProtocol | None = None,
    tools: Sequence[ToolProtocol] = (),
) -> SessionProtocol:
    """Create a session via the active backend.

    If *model* is omitted, a new model is created via :func:`create_model`.
    """
    backend = get_backend()
    resolved_model = model if model is not None else _create_model_from_backend(backend)

    if callable(backend):
        return cast("SessionProtocol", backend(resolved_model, instructions, tools))

    create_session_fn = getattr(backend, "create_session", None)
    if callable(create_session_fn):
        return cast("SessionProtocol", create_session_fn(resolved_model, instructions, tools))

    raise TypeError(
        "Active backend must be callable(model, instructions, tools) or "
        f"provide create_session(); got {type(backend).__name__}"
    )
