"""
Response synthesis.

Turns raw model output into a well-formed EnhancementResult. Output that
is not the expected JSON object is handled by a heuristic parse; when no
model output exists at all, a deterministic fallback enhancement is built
from the request alone.
"""

import json
import logging
import re
import time
from typing import Any, Dict, Optional, Tuple

from .backends import ProviderResponse
from .errors import ParseError
from .models import (
    MAX_AFFECTED_COMPONENTS,
    MAX_ASSIGNEES,
    MAX_CODE_AREAS,
    MAX_DESCRIPTION_LENGTH,
    MAX_LABELS,
    MAX_REPRODUCTION_STEPS,
    MAX_ROOT_CAUSE_LENGTH,
    MAX_SUGGESTED_FIX_LENGTH,
    MAX_TITLE_LENGTH,
    Analysis,
    CodeArea,
    EnhancementRequest,
    EnhancementResult,
    FeedbackKind,
    Priority,
    ResultMetadata,
)
from .prompts import TEMPLATE_VERSION

logger = logging.getLogger(__name__)

FALLBACK_BACKEND = "fallback"
FALLBACK_MODEL = "none"
FALLBACK_CONFIDENCE = 0.3
HEURISTIC_CONFIDENCE = 0.5
HEURISTIC_TITLE_LENGTH = 100

_FENCE = re.compile(r"^\s*```[a-zA-Z0-9_-]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)
_HEADING = re.compile(r"^\s*#+\s*(.*)$")
_PRIORITY_LINE = re.compile(r"priority[*:\s]+(\w+)", re.IGNORECASE)

# Checked in order; first match wins
_PRIORITY_KEYWORDS = (
    (Priority.URGENT, re.compile(r"\b(critical|urgent)\b", re.IGNORECASE)),
    (Priority.HIGH, re.compile(r"\b(high priority|crash(es|ed|ing)?)\b", re.IGNORECASE)),
)

_PRIORITY_ALIASES = {"normal": Priority.MEDIUM, "critical": Priority.URGENT}


def _clip(text: str, limit: int) -> str:
    text = text.strip()
    if len(text) <= limit:
        return text
    return text[:limit - 3].rstrip() + "..."


def _elapsed(started: float) -> float:
    return max(0.0, time.monotonic() - started)


def strip_code_fences(text: str) -> str:
    match = _FENCE.match(text or "")
    return match.group(1) if match else (text or "")


def extract_json_object(content: str) -> Dict[str, Any]:
    """Parse the single JSON object in a model reply.

    Raises:
        ParseError: If no JSON object can be recovered
    """
    text = strip_code_fences(content).strip()
    try:
        data = json.loads(text)
    except ValueError:
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            raise ParseError("No JSON object in model output")
        try:
            data = json.loads(text[start:end + 1])
        except ValueError as e:
            raise ParseError(f"Invalid JSON in model output: {e}")
    if not isinstance(data, dict):
        raise ParseError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def parse_priority(value: Any) -> Optional[Priority]:
    if not isinstance(value, str):
        return None
    value = value.strip().lower()
    if value in _PRIORITY_ALIASES:
        return _PRIORITY_ALIASES[value]
    try:
        return Priority(value)
    except ValueError:
        return None


def infer_priority(text: str) -> Priority:
    """Keyword scan used when the model gives no usable priority."""
    for priority, pattern in _PRIORITY_KEYWORDS:
        if pattern.search(text or ""):
            return priority
    return Priority.MEDIUM


def normalize_labels(values: Any) -> Tuple[str, ...]:
    """Lower-case, trim and de-duplicate labels, keeping first-seen order."""
    if not isinstance(values, (list, tuple)):
        return ()
    labels = []
    for value in values:
        if not isinstance(value, str):
            continue
        label = value.strip().lower()
        if label and label not in labels:
            labels.append(label)
    return tuple(labels[:MAX_LABELS])


def _strings(values: Any, limit: int) -> Tuple[str, ...]:
    if not isinstance(values, (list, tuple)):
        return ()
    return tuple(v.strip() for v in values if isinstance(v, str) and v.strip())[:limit]


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def calculate_confidence(data: Dict[str, Any]) -> float:
    """Confidence from how complete the structured reply is."""
    confidence = 0.8
    if (data.get("enhancedTitle") or data.get("title")) and \
            (data.get("enhancedDescription") or data.get("description")):
        confidence += 0.1
    if isinstance(data.get("labels"), list) and data["labels"]:
        confidence += 0.05
    if data.get("priority"):
        confidence += 0.05
    return min(1.0, confidence)


def _confidence(analysis: Dict[str, Any], data: Dict[str, Any]) -> float:
    value = analysis.get("confidence")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return calculate_confidence(data)
    return min(1.0, max(0.0, float(value)))


def _code_areas(values: Any) -> Tuple[CodeArea, ...]:
    """Code areas that name a file and carry a confidence within [0, 1]."""
    if not isinstance(values, (list, tuple)):
        return ()
    areas = []
    for value in values:
        if not isinstance(value, dict):
            continue
        file = _text(value.get("file"))
        confidence = value.get("confidence")
        if not file or isinstance(confidence, bool) or not isinstance(confidence, (int, float)):
            continue
        if not 0.0 <= confidence <= 1.0:
            continue
        lines = value.get("lines")
        if isinstance(lines, int) and not isinstance(lines, bool):
            lines = str(lines)
        areas.append(CodeArea(
            file=file,
            lines=_text(lines),
            confidence=float(confidence),
            reason=_text(value.get("reason")),
        ))
    return tuple(areas[:MAX_CODE_AREAS])


def _analysis_field(analysis: Dict[str, Any], data: Dict[str, Any], key: str) -> Any:
    # Accepted inside the analysis block or at the top level
    return analysis.get(key, data.get(key))


def _metadata(response: ProviderResponse, started: float, mode: str) -> ResultMetadata:
    return ResultMetadata(
        backend=response.backend.value,
        model=response.model,
        processing_time=_elapsed(started),
        cost=response.cost,
        mode=mode,
        template_version=TEMPLATE_VERSION,
    )


def parse_structured(response: ProviderResponse, request: EnhancementRequest, started: float) -> EnhancementResult:
    """Strict parse of a JSON reply.

    Raises:
        ParseError: If the reply is not an object with a title
    """
    data = extract_json_object(response.content)
    title = data.get("enhancedTitle") or data.get("title")
    if not isinstance(title, str) or not title.strip():
        raise ParseError("Model output has no enhancedTitle")

    description = _text(data.get("enhancedDescription") or data.get("description")) or request.description
    priority = parse_priority(data.get("priority")) or infer_priority(
        f"{title}\n{description}\n{request.title}\n{request.description}"
    )

    analysis = data.get("analysis") if isinstance(data.get("analysis"), dict) else {}
    return EnhancementResult(
        enhanced_title=_clip(title, MAX_TITLE_LENGTH),
        enhanced_description=_clip(description, MAX_DESCRIPTION_LENGTH),
        priority=priority,
        labels=normalize_labels(data.get("labels")),
        analysis=Analysis(
            root_cause=_clip(_text(analysis.get("rootCause") or data.get("rootCauseAnalysis")),
                             MAX_ROOT_CAUSE_LENGTH),
            affected_components=_strings(
                _analysis_field(analysis, data, "affectedComponents"),
                MAX_AFFECTED_COMPONENTS,
            ),
            suggested_fix=_clip(_text(analysis.get("suggestedFix") or data.get("suggestedFix")),
                                MAX_SUGGESTED_FIX_LENGTH),
            confidence=_confidence(analysis, data),
            relevant_code_areas=_code_areas(_analysis_field(analysis, data, "relevantCodeAreas")),
            reproduction_steps=_strings(
                _analysis_field(analysis, data, "reproductionSteps"),
                MAX_REPRODUCTION_STEPS,
            ),
            estimated_effort=_text(_analysis_field(analysis, data, "estimatedEffort")),
            suggested_assignees=_strings(
                _analysis_field(analysis, data, "suggestedAssignees"),
                MAX_ASSIGNEES,
            ),
        ),
        metadata=_metadata(response, started, "structured"),
    )


def _heuristic_labels(text: str, kind: FeedbackKind) -> Tuple[str, ...]:
    lowered = text.lower()
    labels = ["llm-enhanced"]
    if kind == FeedbackKind.CRASH or "crash" in lowered:
        labels += ["crash", "bug"]
    if kind == FeedbackKind.PERFORMANCE or re.search(r"\b(slow|lag|performance|freez)", lowered):
        labels.append("performance")
    if re.search(r"\b(ui|button|screen|layout)\b", lowered):
        labels.append("ui")
    if kind == FeedbackKind.GENERAL and "feedback" in lowered:
        labels += ["feedback", "enhancement"]
    return normalize_labels(labels)


def heuristic_enhancement(response: ProviderResponse, request: EnhancementRequest, started: float) -> EnhancementResult:
    """Best-effort result from free-form model output."""
    content = strip_code_fences(response.content).strip()

    lines = [line.strip() for line in content.splitlines() if line.strip()]
    title = next((line for line in lines if not _HEADING.match(line)), "")
    if not title and lines:
        # Headings only
        title = _HEADING.match(lines[0]).group(1)
    title = title.strip().strip("*").strip() or request.title or "Enhanced issue"

    priority_match = _PRIORITY_LINE.search(content)
    priority = parse_priority(priority_match.group(1)) if priority_match else None
    priority = priority or infer_priority(content)

    return EnhancementResult(
        enhanced_title=_clip(title, HEURISTIC_TITLE_LENGTH),
        enhanced_description=_clip(content or request.description, MAX_DESCRIPTION_LENGTH),
        priority=priority,
        labels=_heuristic_labels(f"{content}\n{request.title}", request.kind),
        analysis=Analysis(confidence=HEURISTIC_CONFIDENCE),
        metadata=_metadata(response, started, "heuristic"),
    )


def synthesize(response: ProviderResponse, request: EnhancementRequest, started: float) -> EnhancementResult:
    """Structured parse first, heuristic parse when that fails."""
    try:
        return parse_structured(response, request, started)
    except ParseError as e:
        logger.warning("Structured parse of %s reply failed, using heuristic parse: %s",
                       response.backend.value, e)
        return heuristic_enhancement(response, request, started)


_FALLBACK_LABELS = {
    FeedbackKind.CRASH: ("crash", "bug", "needs-triage"),
    FeedbackKind.GENERAL: ("feedback", "enhancement", "needs-triage"),
    FeedbackKind.PERFORMANCE: ("performance", "needs-triage"),
}

_FALLBACK_COMPONENTS = {
    FeedbackKind.CRASH: ("crash-handling",),
    FeedbackKind.GENERAL: ("user-experience",),
    FeedbackKind.PERFORMANCE: ("performance",),
}

_KIND_HEADINGS = {
    FeedbackKind.CRASH: "Crash Report",
    FeedbackKind.GENERAL: "User Feedback",
    FeedbackKind.PERFORMANCE: "Performance Report",
}


def _fallback_description(request: EnhancementRequest) -> str:
    lines = [f"## {_KIND_HEADINGS[request.kind]}", "", request.description.strip() or "_No description provided._"]
    crash = request.crash
    if crash is not None:
        lines += ["", "### Crash Details"]
        if crash.exception_type:
            lines.append(f"**Exception**: {crash.exception_type}")
        if crash.device or crash.os_version:
            lines.append(f"**Device**: {crash.device or 'unknown'} ({crash.os_version or 'unknown OS'})")
        lines.append(f"**Stack trace lines**: {len(crash.trace_lines)}")
    if request.snippets or request.changes:
        lines += [
            "",
            "### Context",
            f"**Related code snippets**: {len(request.snippets)}",
            f"**Recent changes**: {len(request.changes)}",
        ]
    lines += ["", "*Note: This issue was formatted by automated fallback; no model analysis was available.*"]
    return "\n".join(lines)


def fallback_enhancement(request: EnhancementRequest, started: Optional[float] = None) -> EnhancementResult:
    """Deterministic result built only from the request, with no network access."""
    started = time.monotonic() if started is None else started
    title = request.title.strip()
    if not title:
        title = f"{_KIND_HEADINGS[request.kind]}: {request.crash.exception_type}" \
            if request.crash and request.crash.exception_type else _KIND_HEADINGS[request.kind]
    return EnhancementResult(
        enhanced_title=_clip(title, MAX_TITLE_LENGTH),
        enhanced_description=_clip(_fallback_description(request), MAX_DESCRIPTION_LENGTH),
        priority=Priority.HIGH if request.kind == FeedbackKind.CRASH else Priority.MEDIUM,
        labels=_FALLBACK_LABELS[request.kind],
        analysis=Analysis(
            affected_components=_FALLBACK_COMPONENTS[request.kind],
            confidence=FALLBACK_CONFIDENCE,
        ),
        metadata=ResultMetadata(
            backend=FALLBACK_BACKEND,
            model=FALLBACK_MODEL,
            processing_time=_elapsed(started),
            cost=0.0,
            mode="fallback",
            template_version=TEMPLATE_VERSION,
        ),
    )
