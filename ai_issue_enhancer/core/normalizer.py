"""
Request normalization.

Builds the canonical NormalizedRequest for an enhancement and translates
backend-specific chat payloads to and from it.
"""

import logging
from typing import Any, Dict, List, Optional, Union

from ai_issue_enhancer.config.loader import SecuritySettings

from .backends import CODECS, WireShape, detect_shape
from .errors import TranslationError
from .models import EnhancementRequest, FeedbackKind, NormalizedRequest, Role, Turn
from .prompts import ANALYSIS_REQUEST, screen_input, system_prompt

logger = logging.getLogger(__name__)

# Section budgets bounding the prompt payload
MAX_TITLE_CHARS = 300
MAX_DESCRIPTION_CHARS = 4000
MAX_TRACE_CHARS = 4000
MAX_SNIPPETS = 3
MAX_SNIPPET_CHARS = 500
MAX_CHANGES = 2
MAX_DIFF_CHARS = 300
MAX_DEVICE_CHARS = 100
MAX_EXCEPTION_CHARS = 500

RequestInput = Union[NormalizedRequest, Dict[str, Any]]


def _truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


class RequestNormalizer:
    """Converts enhancement requests and chat payloads to the neutral form."""

    def __init__(self, security: Optional[SecuritySettings] = None):
        self.security = security or SecuritySettings()

    def _screen(self, text: str, context: str, code: bool = False) -> str:
        return screen_input(
            text,
            context,
            exclude_sensitive=self.security.exclude_sensitive_info,
            anonymize=self.security.anonymize_data,
            block_injection=self.security.block_prompt_injection,
            code=code,
        ).text

    def build(self, request: EnhancementRequest) -> NormalizedRequest:
        """Compose the system and user turns for an enhancement request."""
        return NormalizedRequest(turns=(
            Turn(Role.SYSTEM, system_prompt(request.kind)),
            Turn(Role.USER, self._user_prompt(request)),
        ))

    def _user_prompt(self, request: EnhancementRequest) -> str:
        kind_label = {
            FeedbackKind.CRASH: "Crash Report",
            FeedbackKind.GENERAL: "User Feedback",
            FeedbackKind.PERFORMANCE: "Performance Report",
        }[request.kind]
        sections: List[str] = [
            "## Feedback Analysis",
            f"**Type**: {kind_label}",
            f"**Title**: {self._screen(_truncate(request.title, MAX_TITLE_CHARS), 'title')}",
            "",
            "### Description",
            self._screen(_truncate(request.description, MAX_DESCRIPTION_CHARS), "description"),
        ]

        crash = request.crash
        if crash is not None:
            sections += ["", "### Crash Details"]
            if crash.device or crash.os_version:
                device = self._screen(_truncate(crash.device, MAX_DEVICE_CHARS), "device") or "unknown"
                os_version = self._screen(_truncate(crash.os_version, MAX_DEVICE_CHARS), "OS version") or "unknown OS"
                sections.append(f"**Device**: {device} ({os_version})")
            if crash.exception_type:
                exception_type = _truncate(crash.exception_type, MAX_EXCEPTION_CHARS)
                sections.append(f"**Exception**: {self._screen(exception_type, 'exception type')}")
            if crash.exception_message:
                message = _truncate(crash.exception_message, MAX_EXCEPTION_CHARS)
                sections.append(f"**Message**: {self._screen(message, 'exception message')}")
            if crash.trace_lines:
                trace = _truncate("\n".join(crash.trace_lines), MAX_TRACE_CHARS)
                sections += ["", "**Stack Trace**:", "```", self._screen(trace, "stack trace", code=True), "```"]

        snippets = sorted(request.snippets, key=lambda s: s.relevance, reverse=True)[:MAX_SNIPPETS]
        if snippets:
            sections += ["", "### Relevant Codebase Context"]
            for snippet in snippets:
                header = f"**{snippet.path}** (relevance: {snippet.relevance * 100:.0f}%)"
                if snippet.lines:
                    header += f" lines {snippet.lines}"
                content = self._screen(
                    _truncate(snippet.content, MAX_SNIPPET_CHARS), f"snippet {snippet.path}", code=True
                )
                sections += [header, "```", content, "```"]

        changes = sorted(request.changes, key=lambda c: c.timestamp, reverse=True)[:MAX_CHANGES]
        if changes:
            sections += ["", "### Recent Changes"]
            for change in changes:
                header = f"**{change.file}**"
                if change.author:
                    header += f" by {change.author}"
                if change.timestamp:
                    header += f" ({change.timestamp})"
                diff = self._screen(_truncate(change.diff, MAX_DIFF_CHARS), f"diff {change.file}", code=True)
                sections += [header, "```diff", diff, "```"]

        sections += ["", ANALYSIS_REQUEST]
        return "\n".join(sections)

    def to_normalized(self, payload: RequestInput) -> NormalizedRequest:
        """Convert any supported input to a NormalizedRequest.

        Raises:
            TranslationError: If the payload's shape is unknown or malformed
        """
        if isinstance(payload, NormalizedRequest):
            return payload
        shape = detect_shape(payload)
        try:
            return CODECS[shape].from_wire(payload)
        except TranslationError:
            raise
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise TranslationError(f"Malformed {shape.value} payload: {e}")

    def normalize(self, payload: RequestInput) -> RequestInput:
        """Best-effort normalization; returns the payload unchanged on failure."""
        try:
            return self.to_normalized(payload)
        except TranslationError as e:
            logger.warning("Request translation failed, passing through unchanged: %s", e)
            return payload

    def from_normalized(self, request: NormalizedRequest, shape: WireShape) -> Dict[str, Any]:
        """Render a NormalizedRequest in a backend wire shape."""
        return CODECS[shape].to_wire(request)

    def translate(self, payload: RequestInput, target: WireShape) -> RequestInput:
        """Translate a payload into the target wire shape.

        Falls back to passing the payload through unchanged when detection
        or translation fails.
        """
        try:
            return self.from_normalized(self.to_normalized(payload), target)
        except TranslationError as e:
            logger.warning("Translation to %s failed, passing through unchanged: %s", target.value, e)
            return payload
