"""
Prompt templates and input safety.

Templates are plain, versioned constants. User-supplied text is redacted,
sanitized and scanned for prompt-injection patterns before it is placed
into a prompt.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import List

from .models import FeedbackKind

logger = logging.getLogger(__name__)

TEMPLATE_VERSION = "2.1.0"

MAX_USER_INPUT_LENGTH = 10000
INJECTION_PLACEHOLDER = "[content removed: suspected prompt injection]"

RESPONSE_FORMAT = """Respond with a single JSON object and nothing else:
{
  "enhancedTitle": "Clear, technical title (max 200 characters)",
  "enhancedDescription": "Detailed markdown description with context (max 5000 characters)",
  "priority": "urgent|high|medium|low",
  "labels": ["bug", "crash", "ios"],
  "analysis": {
    "rootCause": "Technical analysis of the cause",
    "affectedComponents": ["component1", "component2"],
    "suggestedFix": "Specific technical recommendations",
    "confidence": 0.0,
    "relevantCodeAreas": [{"file": "path/to/file", "lines": "10-20", "confidence": 0.0, "reason": "Why it matters"}],
    "reproductionSteps": ["Step one", "Step two"],
    "estimatedEffort": "Optional time estimate",
    "suggestedAssignees": ["Optional usernames"]
  }
}"""

CRASH_ANALYSIS_SYSTEM = (
    "You are an expert software engineer analyzing mobile app crash reports. "
    "Your task is to create high-quality, actionable bug reports with technical "
    "analysis and relevant code area identification. Focus on: technical root cause "
    "analysis, stack trace interpretation, impact assessment and severity "
    "classification, code area identification and correlation, reproducibility "
    "analysis, and recommended fix approaches."
)

FEEDBACK_ANALYSIS_SYSTEM = (
    "You are an expert product manager and UX designer analyzing user feedback. "
    "Your task is to create actionable feature requests and improvement tasks with "
    "user experience insights. Focus on: user experience analysis, feature gap "
    "identification, UI/UX improvement recommendations, priority assessment based on "
    "user impact, and implementation complexity estimation."
)

PERFORMANCE_ANALYSIS_SYSTEM = (
    "You are an expert performance engineer analyzing user reports of slowness, "
    "hangs and excessive resource use. Identify the likely hot path, the affected "
    "components and concrete measurements or profiling steps that would confirm the cause."
)

_SYSTEM_BY_KIND = {
    FeedbackKind.CRASH: CRASH_ANALYSIS_SYSTEM,
    FeedbackKind.GENERAL: FEEDBACK_ANALYSIS_SYSTEM,
    FeedbackKind.PERFORMANCE: PERFORMANCE_ANALYSIS_SYSTEM,
}

ANALYSIS_REQUEST = "Analyze the information above and enhance the issue with technical insights."


def system_prompt(kind: FeedbackKind) -> str:
    """System prompt for a feedback kind, including the response format."""
    return (
        f"{_SYSTEM_BY_KIND[kind]}\n\n"
        f"Context:\n- Feedback type: {kind.value}\n"
        "- Codebase context and recent changes may be provided\n\n"
        f"{RESPONSE_FORMAT}"
    )


# Prompt injection patterns
INJECTION_PATTERNS = [
    re.compile(p, re.IGNORECASE) for p in (
        r"\bignore\s+(all\s+)?(previous|above|prior)\s+(instructions?|prompts?)\b",
        r"\bforget\s+(everything|all)\s+(above|before)\b",
        r"\bnow\s+(act|behave|pretend)\s+as\b",
        r"\byou\s+are\s+now\b",
        r"^\s*(system|assistant)\s*:",
        r"\brole\s*[:=]\s*(system|assistant)\b",
        r"\brespond\s+with\s+only\b",
        r"\b(dev|debug|admin)\s*mode\b",
        r"\bjailbreak\b",
        r"\boverride\s+safety\b",
        r"\bescape\s+the\s+system\b",
    )
]

_SECRET_PATTERN = re.compile(r"(?:api[_-]?key|token|secret)[\"\s]*[:=][\"\s]*[a-zA-Z0-9_\-.]{10,}", re.IGNORECASE)
_CARD_PATTERN = re.compile(r"\b\d{4}[- ]?\d{4}[- ]?\d{4}[- ]?\d{4}\b")
_SSN_PATTERN = re.compile(r"\b\d{3}-\d{2}-\d{4}\b")
_EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
_PHONE_PATTERN = re.compile(r"\b\d{3}[-.]?\d{3}[-.]?\d{4}\b")
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")

REDACTED = "[REDACTED]"


@dataclass(frozen=True)
class InputCheck:
    """Result of screening one piece of user input."""
    text: str
    injection_patterns: List[str] = field(default_factory=list)

    @property
    def suspicious(self) -> bool:
        return bool(self.injection_patterns)


def redact_sensitive(text: str, anonymize: bool = False) -> str:
    """Replace secrets, card numbers and SSNs (plus emails and phones when anonymizing)."""
    patterns = [_SECRET_PATTERN, _CARD_PATTERN, _SSN_PATTERN]
    if anonymize:
        patterns += [_EMAIL_PATTERN, _PHONE_PATTERN]
    for pattern in patterns:
        text = pattern.sub(REDACTED, text)
    return text


def detect_injection(text: str) -> List[str]:
    """Return the source of every injection pattern found in text."""
    return [p.pattern for p in INJECTION_PATTERNS if p.search(text)]


def sanitize_input(text: str, code: bool = False) -> str:
    """Escape angle brackets, drop control characters and cap the length.

    Code (stack traces, snippets, diffs) keeps its brackets and indentation
    verbatim; it is always placed inside a fenced block.
    """
    if not text:
        return ""
    if len(text) > MAX_USER_INPUT_LENGTH:
        logger.warning("Input truncated: length %d > %d", len(text), MAX_USER_INPUT_LENGTH)
        text = text[:MAX_USER_INPUT_LENGTH]
    text = _CONTROL_CHARS.sub("", text)
    if code:
        return text.strip("\r\n").rstrip()
    return text.replace("<", "&lt;").replace(">", "&gt;").strip()


def screen_input(
    text: str,
    context: str,
    exclude_sensitive: bool = True,
    anonymize: bool = False,
    block_injection: bool = True,
    code: bool = False,
) -> InputCheck:
    """Redact, scan and sanitize one field of user input."""
    found = detect_injection(text or "")
    if found:
        logger.warning("Potential prompt injection in %s (%d pattern(s))", context, len(found))
        if block_injection:
            return InputCheck(text=INJECTION_PLACEHOLDER, injection_patterns=found)
    if exclude_sensitive:
        text = redact_sensitive(text or "", anonymize=anonymize)
    return InputCheck(text=sanitize_input(text or "", code=code), injection_patterns=found)
