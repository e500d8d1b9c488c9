"""
Data models for issue enhancement.

Defines the immutable request/result structures exchanged with callers.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple, Union


MAX_TITLE_LENGTH = 200
MAX_DESCRIPTION_LENGTH = 5000
MAX_LABELS = 15
MAX_AFFECTED_COMPONENTS = 10
MAX_ROOT_CAUSE_LENGTH = 1000
MAX_SUGGESTED_FIX_LENGTH = 2000
MAX_CODE_AREAS = 10
MAX_REPRODUCTION_STEPS = 20
MAX_ASSIGNEES = 5


class FeedbackKind(Enum):
    """Kind of feedback record being enhanced."""
    CRASH = "crash"
    GENERAL = "general"
    PERFORMANCE = "performance"


class Priority(Enum):
    """Issue priority, most severe first."""
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Role(Enum):
    """Speaker of a conversation turn."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Segment:
    """Typed piece of turn content: text or an image reference."""
    type: str  # "text" or "image_url"
    text: Optional[str] = None
    image_url: Optional[str] = None
    detail: Optional[str] = None


@dataclass(frozen=True)
class Turn:
    """One conversation turn.

    Content is plain text or a tuple of segments.
    """
    role: Role
    content: Union[str, Tuple[Segment, ...]]

    def text(self) -> str:
        """Concatenated text of the turn, ignoring image segments."""
        if isinstance(self.content, str):
            return self.content
        return "".join(s.text or "" for s in self.content if s.type == "text")


@dataclass(frozen=True)
class NormalizedRequest:
    """Canonical request every wire shape is translated to and from."""
    turns: Tuple[Turn, ...]
    model: Optional[str] = None
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "turns", tuple(self.turns))

    @property
    def system_text(self) -> str:
        return "\n\n".join(t.text() for t in self.turns if t.role == Role.SYSTEM)

    def all_text(self) -> str:
        return "\n".join(t.text() for t in self.turns)


@dataclass(frozen=True)
class CrashContext:
    """Crash details attached to a crash report."""
    trace_lines: Tuple[str, ...] = ()
    device: str = ""
    os_version: str = ""
    exception_type: str = ""
    exception_message: str = ""


@dataclass(frozen=True)
class CodeSnippet:
    """A ranked piece of codebase context."""
    path: str
    content: str
    relevance: float
    lines: str = ""


@dataclass(frozen=True)
class ChangeDiff:
    """A recent change that may relate to the feedback."""
    file: str
    diff: str
    author: str = ""
    timestamp: str = ""


@dataclass(frozen=True)
class RequestOptions:
    """Per-call options for enhancement and raw requests.

    deadline_seconds bounds the whole fallback chain; timeout_seconds
    overrides the per-attempt timeout of every candidate.
    """
    backend: Optional[str] = None
    model: Optional[str] = None
    timeout_seconds: Optional[float] = None
    enable_fallback: bool = True
    skip_cost_check: bool = False
    prefer_cheapest: bool = False
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    deadline_seconds: Optional[float] = None


@dataclass(frozen=True)
class EnhancementRequest:
    """Structured feedback record to be enhanced.

    Sequences are stored as tuples so a request cannot change once built.
    """
    title: str
    description: str
    kind: FeedbackKind = FeedbackKind.GENERAL
    crash: Optional[CrashContext] = None
    snippets: Tuple[CodeSnippet, ...] = ()
    changes: Tuple[ChangeDiff, ...] = ()
    options: RequestOptions = field(default_factory=RequestOptions)

    def __post_init__(self):
        """Coerce sequence fields to tuples."""
        object.__setattr__(self, "snippets", tuple(self.snippets))
        object.__setattr__(self, "changes", tuple(self.changes))
        if isinstance(self.kind, str):
            object.__setattr__(self, "kind", FeedbackKind(self.kind))


@dataclass(frozen=True)
class CodeArea:
    """A source location the model points at, with its confidence in [0, 1]."""
    file: str
    lines: str = ""
    confidence: float = 0.0
    reason: str = ""


@dataclass(frozen=True)
class Analysis:
    """Technical analysis block of an enhancement."""
    root_cause: str = ""
    affected_components: Tuple[str, ...] = ()
    suggested_fix: str = ""
    confidence: float = 0.0
    relevant_code_areas: Tuple[CodeArea, ...] = ()
    reproduction_steps: Tuple[str, ...] = ()
    estimated_effort: str = ""
    suggested_assignees: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ResultMetadata:
    """How an enhancement was produced."""
    backend: str
    model: str
    processing_time: float
    cost: float
    mode: str = "structured"  # structured, heuristic or fallback
    template_version: str = ""


@dataclass(frozen=True)
class EnhancementResult:
    """Well-formed enhancement returned to callers."""
    enhanced_title: str
    enhanced_description: str
    priority: Priority
    labels: Tuple[str, ...]
    analysis: Analysis
    metadata: ResultMetadata

    def to_dict(self) -> dict:
        """Render in the camelCase shape issue trackers consume."""
        return {
            "enhancedTitle": self.enhanced_title,
            "enhancedDescription": self.enhanced_description,
            "priority": self.priority.value,
            "labels": list(self.labels),
            "analysis": {
                "rootCause": self.analysis.root_cause,
                "affectedComponents": list(self.analysis.affected_components),
                "suggestedFix": self.analysis.suggested_fix,
                "confidence": self.analysis.confidence,
                "relevantCodeAreas": [
                    {"file": a.file, "lines": a.lines, "confidence": a.confidence, "reason": a.reason}
                    for a in self.analysis.relevant_code_areas
                ],
                "reproductionSteps": list(self.analysis.reproduction_steps),
                "estimatedEffort": self.analysis.estimated_effort,
                "suggestedAssignees": list(self.analysis.suggested_assignees),
            },
            "metadata": {
                "backend": self.metadata.backend,
                "model": self.metadata.model,
                "processingTime": self.metadata.processing_time,
                "cost": self.metadata.cost,
                "mode": self.metadata.mode,
                "templateVersion": self.metadata.template_version,
            },
        }
