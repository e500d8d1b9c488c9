"""
Backend kinds and their wire strategies.

Each Backend maps to exactly one BackendStrategy that knows the backend's
wire shape, endpoint, auth headers and credential pattern. Translation
between wire shapes always goes through NormalizedRequest.
"""

import re
import socket
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Pattern

import requests

from .errors import ErrorKind, ProviderError, ProviderTimeout, TranslationError
from .models import NormalizedRequest, Role, Segment, Turn
from .token_counter import TokenUsage


class Backend(Enum):
    """Supported model backends, in registry order."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    DEEPSEEK = "deepseek"
    XAI = "xai"

    @classmethod
    def parse(cls, value) -> "Backend":
        """Look up a backend by name (case-insensitive)."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            valid = [b.value for b in cls]
            raise ValueError(f"Unknown backend '{value}', must be one of: {valid}")


class WireShape(Enum):
    """Request/response shapes spoken by backends."""
    OPENAI_CHAT = "openai_chat"
    ANTHROPIC_MESSAGES = "anthropic_messages"
    GEMINI_CONTENTS = "gemini_contents"


@dataclass(frozen=True)
class ProviderResponse:
    """Backend reply converted to the internal form."""
    content: str
    usage: TokenUsage
    model: str
    backend: Backend
    cost: float = 0.0
    finish_reason: Optional[str] = None
    retry_count: int = 0
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


# ---------------------------------------------------------------------------
# OpenAI chat completions shape
# ---------------------------------------------------------------------------

def _openai_segment(segment: Segment) -> Dict[str, Any]:
    if segment.type == "image_url":
        image = {"url": segment.image_url}
        if segment.detail:
            image["detail"] = segment.detail
        return {"type": "image_url", "image_url": image}
    return {"type": "text", "text": segment.text or ""}


def _openai_to_wire(request: NormalizedRequest) -> Dict[str, Any]:
    messages = []
    for turn in request.turns:
        if isinstance(turn.content, str):
            content = turn.content
        else:
            content = [_openai_segment(s) for s in turn.content]
        messages.append({"role": turn.role.value, "content": content})
    wire = {"model": request.model, "messages": messages,
            "temperature": request.temperature, "max_tokens": request.max_tokens}
    return {k: v for k, v in wire.items() if v is not None}


def _parse_role(value, allowed) -> Role:
    try:
        role = Role(value)
    except ValueError:
        raise TranslationError(f"Unknown role: {value!r}")
    if role not in allowed:
        raise TranslationError(f"Role {value!r} not allowed in this shape")
    return role


def _openai_from_wire(payload: Dict[str, Any]) -> NormalizedRequest:
    messages = payload.get("messages")
    if not isinstance(messages, list) or not messages:
        raise TranslationError("'messages' must be a non-empty list")
    turns = []
    for message in messages:
        if not isinstance(message, dict):
            raise TranslationError("message must be an object")
        role = _parse_role(message.get("role"), tuple(Role))
        content = message.get("content")
        if isinstance(content, str):
            turns.append(Turn(role, content))
            continue
        if not isinstance(content, list):
            raise TranslationError("message content must be a string or a list")
        segments = []
        for part in content:
            part_type = part.get("type") if isinstance(part, dict) else None
            if part_type == "text":
                segments.append(Segment(type="text", text=part.get("text", "")))
            elif part_type == "image_url":
                image = part.get("image_url") or {}
                segments.append(Segment(type="image_url", image_url=image.get("url"),
                                        detail=image.get("detail")))
            else:
                raise TranslationError(f"Unsupported content part: {part_type!r}")
        turns.append(Turn(role, tuple(segments)))
    return NormalizedRequest(
        turns=tuple(turns),
        model=payload.get("model"),
        temperature=payload.get("temperature"),
        max_tokens=payload.get("max_tokens"),
    )


def _openai_parse_reply(payload: Dict[str, Any], backend: "Backend", model: str) -> ProviderResponse:
    choices = payload.get("choices") or [{}]
    first = choices[0] or {}
    usage = payload.get("usage") or {}
    return ProviderResponse(
        content=(first.get("message") or {}).get("content") or "",
        usage=TokenUsage(
            prompt_tokens=int(usage.get("prompt_tokens") or 0),
            completion_tokens=int(usage.get("completion_tokens") or 0),
        ),
        model=payload.get("model") or model,
        backend=backend,
        finish_reason=first.get("finish_reason"),
        raw=payload,
    )


# ---------------------------------------------------------------------------
# Anthropic messages shape
# ---------------------------------------------------------------------------

ANTHROPIC_DEFAULT_MAX_TOKENS = 1024


def _anthropic_block(segment: Segment) -> Dict[str, Any]:
    if segment.type == "image_url":
        return {"type": "image", "source": {"type": "url", "url": segment.image_url}}
    return {"type": "text", "text": segment.text or ""}


def _anthropic_to_wire(request: NormalizedRequest) -> Dict[str, Any]:
    messages = []
    for turn in request.turns:
        if turn.role == Role.SYSTEM:
            continue
        if isinstance(turn.content, str):
            content = turn.content
        else:
            content = [_anthropic_block(s) for s in turn.content]
        messages.append({"role": turn.role.value, "content": content})
    wire = {
        "model": request.model,
        "messages": messages,
        "max_tokens": request.max_tokens or ANTHROPIC_DEFAULT_MAX_TOKENS,
        "temperature": request.temperature,
    }
    if request.system_text:
        wire["system"] = request.system_text
    return {k: v for k, v in wire.items() if v is not None}


def _anthropic_segments(content) -> List[Segment]:
    segments = []
    for block in content:
        block_type = block.get("type") if isinstance(block, dict) else None
        if block_type == "text":
            segments.append(Segment(type="text", text=block.get("text", "")))
        elif block_type == "image":
            source = block.get("source") or {}
            segments.append(Segment(type="image_url", image_url=source.get("url")))
        else:
            raise TranslationError(f"Unsupported content block: {block_type!r}")
    return segments


def _anthropic_from_wire(payload: Dict[str, Any]) -> NormalizedRequest:
    messages = payload.get("messages")
    if not isinstance(messages, list):
        raise TranslationError("'messages' must be a list")
    turns = []
    system = payload.get("system")
    if isinstance(system, str) and system:
        turns.append(Turn(Role.SYSTEM, system))
    elif isinstance(system, list) and system:
        turns.append(Turn(Role.SYSTEM, "".join(s.text or "" for s in _anthropic_segments(system))))
    for message in messages:
        if not isinstance(message, dict):
            raise TranslationError("message must be an object")
        role = _parse_role(message.get("role"), (Role.USER, Role.ASSISTANT))
        content = message.get("content")
        if isinstance(content, str):
            turns.append(Turn(role, content))
        elif isinstance(content, list):
            turns.append(Turn(role, tuple(_anthropic_segments(content))))
        else:
            raise TranslationError("message content must be a string or a list")
    if not turns:
        raise TranslationError("request has no turns")
    return NormalizedRequest(
        turns=tuple(turns),
        model=payload.get("model"),
        temperature=payload.get("temperature"),
        max_tokens=payload.get("max_tokens"),
    )


def _anthropic_parse_reply(payload: Dict[str, Any], backend: "Backend", model: str) -> ProviderResponse:
    blocks = payload.get("content") or []
    text = "".join(
        b.get("text", "") for b in blocks if isinstance(b, dict) and b.get("type", "text") == "text"
    )
    usage = payload.get("usage") or {}
    return ProviderResponse(
        content=text,
        usage=TokenUsage(
            prompt_tokens=int(usage.get("input_tokens") or 0),
            completion_tokens=int(usage.get("output_tokens") or 0),
        ),
        model=payload.get("model") or model,
        backend=backend,
        finish_reason=payload.get("stop_reason"),
        raw=payload,
    )


# ---------------------------------------------------------------------------
# Gemini generateContent shape
# ---------------------------------------------------------------------------

def _gemini_part(segment: Segment) -> Dict[str, Any]:
    if segment.type == "image_url":
        return {"file_data": {"file_uri": segment.image_url, "mime_type": "image/*"}}
    return {"text": segment.text or ""}


def _gemini_to_wire(request: NormalizedRequest) -> Dict[str, Any]:
    contents = []
    for turn in request.turns:
        if turn.role == Role.SYSTEM:
            continue
        if isinstance(turn.content, str):
            parts = [{"text": turn.content}]
        else:
            parts = [_gemini_part(s) for s in turn.content]
        contents.append({"role": "model" if turn.role == Role.ASSISTANT else "user", "parts": parts})
    wire: Dict[str, Any] = {"contents": contents}
    if request.model:
        wire["model"] = request.model
    if request.system_text:
        wire["system_instruction"] = {"parts": [{"text": request.system_text}]}
    generation_config = {"temperature": request.temperature,
                         "max_output_tokens": request.max_tokens}
    generation_config = {k: v for k, v in generation_config.items() if v is not None}
    if generation_config:
        wire["generation_config"] = generation_config
    return wire


def _gemini_from_wire(payload: Dict[str, Any]) -> NormalizedRequest:
    contents = payload.get("contents")
    if not isinstance(contents, list):
        raise TranslationError("'contents' must be a list")
    turns = []
    instruction = payload.get("system_instruction") or payload.get("systemInstruction")
    if instruction:
        parts = instruction.get("parts", []) if isinstance(instruction, dict) else []
        turns.append(Turn(Role.SYSTEM, "".join(p.get("text", "") for p in parts)))
    for entry in contents:
        if not isinstance(entry, dict) or not isinstance(entry.get("parts"), list):
            raise TranslationError("content entry must have a 'parts' list")
        role_name = entry.get("role", "user")
        if role_name not in ("user", "model"):
            raise TranslationError(f"Unknown role: {role_name!r}")
        role = Role.ASSISTANT if role_name == "model" else Role.USER
        parts = entry["parts"]
        if len(parts) == 1 and "text" in parts[0]:
            turns.append(Turn(role, parts[0]["text"]))
            continue
        segments = []
        for part in parts:
            if "text" in part:
                segments.append(Segment(type="text", text=part["text"]))
            elif "file_data" in part:
                segments.append(Segment(type="image_url", image_url=part["file_data"].get("file_uri")))
            else:
                raise TranslationError(f"Unsupported part: {sorted(part)}")
        turns.append(Turn(role, tuple(segments)))
    if not turns:
        raise TranslationError("request has no turns")
    config = payload.get("generation_config") or payload.get("generationConfig") or {}
    return NormalizedRequest(
        turns=tuple(turns),
        model=payload.get("model"),
        temperature=config.get("temperature"),
        max_tokens=config.get("max_output_tokens") or config.get("maxOutputTokens"),
    )


def _gemini_parse_reply(payload: Dict[str, Any], backend: "Backend", model: str) -> ProviderResponse:
    candidates = payload.get("candidates") or [{}]
    first = candidates[0] or {}
    parts = (first.get("content") or {}).get("parts") or []
    usage = payload.get("usageMetadata") or {}
    return ProviderResponse(
        content="".join(p.get("text", "") for p in parts if isinstance(p, dict)),
        usage=TokenUsage(
            prompt_tokens=int(usage.get("promptTokenCount") or 0),
            completion_tokens=int(usage.get("candidatesTokenCount") or 0),
        ),
        model=payload.get("modelVersion") or model,
        backend=backend,
        finish_reason=first.get("finishReason"),
        raw=payload,
    )


@dataclass(frozen=True)
class ShapeCodec:
    """Conversions for one wire shape."""
    to_wire: Callable[[NormalizedRequest], Dict[str, Any]]
    from_wire: Callable[[Dict[str, Any]], NormalizedRequest]
    parse_reply: Callable[[Dict[str, Any], Backend, str], ProviderResponse]


CODECS: Dict[WireShape, ShapeCodec] = {
    WireShape.OPENAI_CHAT: ShapeCodec(_openai_to_wire, _openai_from_wire, _openai_parse_reply),
    WireShape.ANTHROPIC_MESSAGES: ShapeCodec(_anthropic_to_wire, _anthropic_from_wire, _anthropic_parse_reply),
    WireShape.GEMINI_CONTENTS: ShapeCodec(_gemini_to_wire, _gemini_from_wire, _gemini_parse_reply),
}


def detect_shape(payload: Any) -> WireShape:
    """Guess the wire shape of a backend-specific request payload.

    Raises:
        TranslationError: If the payload matches no known shape
    """
    if not isinstance(payload, dict):
        raise TranslationError(f"Cannot detect shape of {type(payload).__name__}")
    if "contents" in payload:
        return WireShape.GEMINI_CONTENTS
    messages = payload.get("messages")
    if not isinstance(messages, list):
        raise TranslationError("Payload has neither 'messages' nor 'contents'")
    if "system" in payload:
        return WireShape.ANTHROPIC_MESSAGES
    for message in messages:
        content = message.get("content") if isinstance(message, dict) else None
        if isinstance(content, list) and any(
            isinstance(part, dict) and part.get("type") == "image" for part in content
        ):
            return WireShape.ANTHROPIC_MESSAGES
    return WireShape.OPENAI_CHAT


# ---------------------------------------------------------------------------
# Per-backend strategies
# ---------------------------------------------------------------------------

def _bearer(api_key: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}


def _anthropic_headers(api_key: str) -> Dict[str, str]:
    return {"x-api-key": api_key, "anthropic-version": "2023-06-01",
            "Content-Type": "application/json"}


def _google_headers(api_key: str) -> Dict[str, str]:
    return {"x-goog-api-key": api_key, "Content-Type": "application/json"}


@dataclass(frozen=True)
class BackendStrategy:
    """How to talk to one backend kind."""
    backend: Backend
    shape: WireShape
    endpoint: str
    default_model: str
    credential_pattern: Pattern
    auth_headers: Callable[[str], Dict[str, str]]

    @property
    def codec(self) -> ShapeCodec:
        return CODECS[self.shape]

    def translate(self, request: NormalizedRequest) -> Dict[str, Any]:
        return self.codec.to_wire(request)

    def parse_reply(self, payload: Dict[str, Any], model: str) -> ProviderResponse:
        return self.codec.parse_reply(payload, self.backend, model)

    def endpoint_for(self, model: str) -> str:
        return self.endpoint.format(model=model)

    def credential_looks_valid(self, credential: str) -> bool:
        return bool(self.credential_pattern.match(credential or ""))


STRATEGIES: Dict[Backend, BackendStrategy] = {
    Backend.OPENAI: BackendStrategy(
        backend=Backend.OPENAI,
        shape=WireShape.OPENAI_CHAT,
        endpoint="https://api.openai.com/v1",
        default_model="gpt-4o",
        credential_pattern=re.compile(r"^sk-[A-Za-z0-9_\-]{17,}$"),
        auth_headers=_bearer,
    ),
    Backend.ANTHROPIC: BackendStrategy(
        backend=Backend.ANTHROPIC,
        shape=WireShape.ANTHROPIC_MESSAGES,
        endpoint="https://api.anthropic.com/v1/messages",
        default_model="claude-3-5-sonnet-20241022",
        credential_pattern=re.compile(r"^sk-ant-[A-Za-z0-9_\-]{13,}$"),
        auth_headers=_anthropic_headers,
    ),
    Backend.GOOGLE: BackendStrategy(
        backend=Backend.GOOGLE,
        shape=WireShape.GEMINI_CONTENTS,
        endpoint="https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent",
        default_model="gemini-1.5-pro",
        credential_pattern=re.compile(r"^AIza[A-Za-z0-9_\-]{16,}$"),
        auth_headers=_google_headers,
    ),
    Backend.DEEPSEEK: BackendStrategy(
        backend=Backend.DEEPSEEK,
        shape=WireShape.OPENAI_CHAT,
        endpoint="https://api.deepseek.com/v1",
        default_model="deepseek-chat",
        credential_pattern=re.compile(r"^sk-[A-Za-z0-9_\-]{17,}$"),
        auth_headers=_bearer,
    ),
    Backend.XAI: BackendStrategy(
        backend=Backend.XAI,
        shape=WireShape.OPENAI_CHAT,
        endpoint="https://api.x.ai/v1",
        default_model="grok-2",
        credential_pattern=re.compile(r"^xai-[A-Za-z0-9_\-]{16,}$"),
        auth_headers=_bearer,
    ),
}

_missing = set(Backend) - set(STRATEGIES)
if _missing:
    raise RuntimeError(f"No strategy registered for backends: {sorted(b.value for b in _missing)}")


def get_strategy(backend: Backend) -> BackendStrategy:
    return STRATEGIES[backend]


# ---------------------------------------------------------------------------
# Error classification
# ---------------------------------------------------------------------------

AUTH_FAILURE_PATTERN = re.compile(
    r"\b(401|403)\b|unauthori[sz]ed|forbidden|invalid[ _-]?(api[ _-]?)?key|incorrect api key"
    r"|authentication|permission denied|credential",
    re.IGNORECASE,
)

_KIND_BY_STATUS = {
    400: ErrorKind.INVALID_REQUEST,
    401: ErrorKind.AUTHENTICATION,
    403: ErrorKind.AUTHENTICATION,
    404: ErrorKind.INVALID_REQUEST,
    408: ErrorKind.TIMEOUT,
    422: ErrorKind.INVALID_REQUEST,
    429: ErrorKind.RATE_LIMIT,
}


def kind_for_status(status: Optional[int]) -> ErrorKind:
    if status is None:
        return ErrorKind.API
    return _KIND_BY_STATUS.get(status, ErrorKind.API)


def classify_error(error: BaseException, backend: Optional[Backend] = None) -> ProviderError:
    """Turn any transport failure into a ProviderError with a kind."""
    name = backend.value if backend else None
    if isinstance(error, ProviderError):
        if error.backend is None:
            error.backend = name
        if error.kind != ErrorKind.AUTHENTICATION and AUTH_FAILURE_PATTERN.search(str(error)):
            error.kind = ErrorKind.AUTHENTICATION
        return error
    if isinstance(error, (TimeoutError, socket.timeout, requests.Timeout)):
        return ProviderTimeout(str(error) or "request timed out", backend=name)
    status = getattr(error, "status_code", None) or getattr(error, "status", None)
    if not isinstance(status, int):
        status = None
    kind = kind_for_status(status)
    if AUTH_FAILURE_PATTERN.search(str(error)):
        kind = ErrorKind.AUTHENTICATION
    return ProviderError(str(error) or type(error).__name__, backend=name, status=status, kind=kind)


def is_authentication_failure(error: ProviderError) -> bool:
    return error.kind == ErrorKind.AUTHENTICATION
