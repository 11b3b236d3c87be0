"""
Recommender Models
===================
Pydantic models for API contracts, persisted records, and candidate features.
Single source of truth — imported by the ranking pipeline, the stores and the HTTP layer.

Wire format is camelCase (``decisionId``, ``fineScore`` …); Python code uses snake_case.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class CamelModel(BaseModel):
    """Base model: camelCase on the wire, snake_case attributes."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FrozenCamelModel(BaseModel):
    """Immutable variant for records that must never change after creation."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ── Enums ─────────────────────────────────────────────────────────

class TargetType(str, Enum):
    MODEL = "model"
    PROMPT = "prompt"
    STYLE = "style"
    SCRIPT = "script"
    CONTENT_ELEMENT = "content-element"


class Bucket(str, Enum):
    """Where a candidate sits in the candidate set shown to the caller."""
    TOP1 = "top1"
    FINE_TOP2 = "fineTop2"
    COARSE_EXTRA = "coarse-extra"
    OUT_OF_POOL = "out-of-pool"


class DecisionMode(str, Enum):
    EXPLOIT = "exploit"
    EXPLORE = "explore"


class EventType(str, Enum):
    EXPOSE = "expose"
    SELECT = "select"
    AUTO_SELECT = "auto_select"
    EXECUTE_START = "execute_start"
    EXECUTE_COMPLETE = "execute_complete"
    IMPLICIT_POSITIVE = "implicit_positive"
    IMPLICIT_NEGATIVE = "implicit_negative"
    EXPLICIT_FEEDBACK = "explicit_feedback"
    CUSTOM = "custom"


class SignalKind(str, Enum):
    """Implicit feedback signals inferred from downstream behavior."""
    IMPLICIT_POSITIVE = "implicit_positive"
    IMPLICIT_NEGATIVE = "implicit_negative"


# ── Raw candidates (tagged union keyed by targetType) ────────────

class _CandidateFeatures(CamelModel):
    """Features shared by every candidate kind."""
    id: str = Field(..., min_length=1)
    title: Optional[str] = None
    name: Optional[str] = None               # Concrete value the executor should use
    category: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    langs: List[str] = Field(default_factory=list)
    quality: float = Field(0.7, ge=0.0, le=1.0)          # Historical quality
    preference: float = Field(0.5, ge=0.0, le=1.0)       # Observed user preference
    business_value: float = Field(0.5, ge=0.0, le=1.0)   # Conversion / margin proxy
    trend: float = Field(0.5, ge=0.0, le=1.0)            # Market trend signal
    usage_share: float = Field(0.0, ge=0.0, le=1.0)      # Share of recent picks
    updated_days_ago: Optional[float] = Field(None, ge=0.0)
    expected_cost_usd: Optional[float] = Field(None, ge=0.0)
    expected_latency_ms: Optional[float] = Field(None, ge=0.0)
    safety_level: Literal["low", "medium", "high"] = "medium"

    @property
    def provider_key(self) -> Optional[str]:
        return None

    @property
    def supports_json_mode(self) -> Optional[bool]:
        """None means the capability does not apply to this kind."""
        return None

    @property
    def supports_tool_use(self) -> Optional[bool]:
        return None

    @property
    def technical_quality(self) -> float:
        return self.quality

    def breaker_keys(self) -> List[str]:
        keys = [self.id]
        if self.provider_key:
            keys.insert(0, self.provider_key)
        return keys


class ModelCandidate(_CandidateFeatures):
    target_type: Literal["model"] = "model"
    provider: str = Field(..., min_length=1)
    json_mode: bool = False
    tool_use: bool = False
    max_context: int = Field(8192, ge=0)
    price_per_1k_tokens: Optional[float] = Field(None, ge=0.0)
    stability: float = Field(0.8, ge=0.0, le=1.0)

    @property
    def provider_key(self) -> Optional[str]:
        return self.provider.lower()

    @property
    def supports_json_mode(self) -> Optional[bool]:
        return self.json_mode

    @property
    def supports_tool_use(self) -> Optional[bool]:
        return self.tool_use

    @property
    def technical_quality(self) -> float:
        window_fit = 1.0 if self.max_context >= 2000 else 0.5
        return (self.stability * 0.5) + (self.quality * 0.3) + (window_fit * 0.2)


class PromptCandidate(_CandidateFeatures):
    target_type: Literal["prompt"] = "prompt"
    structured_output: bool = False
    task_types: List[str] = Field(default_factory=list)

    @property
    def supports_json_mode(self) -> Optional[bool]:
        return self.structured_output


class StyleCandidate(_CandidateFeatures):
    target_type: Literal["style"] = "style"
    tone: Optional[str] = None
    channels: List[str] = Field(default_factory=list)


class ScriptCandidate(_CandidateFeatures):
    target_type: Literal["script"] = "script"
    structure: Optional[str] = None
    length_hint: Optional[Literal["short", "medium", "long"]] = None
    channels: List[str] = Field(default_factory=list)


class ContentElementCandidate(_CandidateFeatures):
    target_type: Literal["content-element"] = "content-element"
    element_kind: Literal["selling-points", "pain-points", "target-audience"] = "selling-points"


RawCandidate = Annotated[
    Union[
        ModelCandidate,
        PromptCandidate,
        StyleCandidate,
        ScriptCandidate,
        ContentElementCandidate,
    ],
    Field(discriminator="target_type"),
]


# ── Scored candidates & persisted records ────────────────────────

class Candidate(FrozenCamelModel):
    """A candidate as ranked and shown to the caller."""
    target_id: str
    target_type: TargetType
    title: Optional[str] = None
    name: Optional[str] = None
    coarse_score: float = 0.0
    fine_score: Optional[float] = None
    reason: Dict[str, Any] = Field(default_factory=dict)
    bucket: Optional[Bucket] = None

    @property
    def id(self) -> str:
        return self.target_id

    @property
    def score(self) -> float:
        return self.fine_score if self.fine_score is not None else self.coarse_score


class CandidateSet(FrozenCamelModel):
    """What was shown, frozen at decision time."""
    id: str = Field(default_factory=new_id)
    scenario: str
    subject_snapshot: Dict[str, Any] = Field(default_factory=dict)
    context_snapshot: Dict[str, Any] = Field(default_factory=dict)
    candidates: Tuple[Candidate, ...] = ()
    created_at: datetime = Field(default_factory=utcnow)

    def candidate_ids(self) -> List[str]:
        return [c.target_id for c in self.candidates]


class Decision(FrozenCamelModel):
    """One immutable record of what was recommended and under which policy."""
    id: str
    candidate_set_id: str
    scenario: str
    chosen_target_id: str
    chosen_target_type: TargetType
    mode: DecisionMode = DecisionMode.EXPLOIT
    weights_snapshot: Dict[str, Any] = Field(default_factory=dict)
    explore_flags: Optional[Dict[str, Any]] = None
    strategy_version: str = "v1"
    request_id: Optional[str] = None
    segment_key: str = "default|default|default"
    subject_key: Optional[str] = None
    chosen_category: Optional[str] = None
    chosen_tags: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def fallback_used(self) -> bool:
        return bool(self.weights_snapshot.get("fallbackUsed"))


class Outcome(CamelModel):
    """Post-hoc measured result of a decision. At most one per decision."""
    decision_id: str
    latency_ms: Optional[float] = None
    cost_actual: Optional[float] = None
    quality_score: Optional[float] = None
    conversion: Optional[bool] = None
    rejected: Optional[bool] = None
    edit_distance: Optional[float] = None
    notes: Optional[str] = None
    updated_at: datetime = Field(default_factory=utcnow)


OUTCOME_FIELDS = (
    "latency_ms",
    "cost_actual",
    "quality_score",
    "conversion",
    "rejected",
    "edit_distance",
    "notes",
)


class Event(CamelModel):
    """Append-only decision event log entry."""
    id: str = Field(default_factory=new_id)
    decision_id: str
    event_type: EventType
    payload: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)


class Feedback(CamelModel):
    """Explicit user correction."""
    id: str = Field(default_factory=new_id)
    decision_id: str
    feedback_type: str
    chosen_candidate_id: str
    reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class RecommendationSetting(CamelModel):
    """Per-scenario ranking knobs. Missing rows fall back to SETTING_DEFAULTS."""
    scenario: str
    mode: Literal["rule", "ml"] = "rule"
    m_coarse: int = Field(10, ge=1)
    k_fine: int = Field(3, ge=1)
    epsilon: float = Field(0.10, ge=0.0, le=1.0)
    min_explore: float = Field(0.05, ge=0.0, le=1.0)
    diversity: bool = True
    quality_floor_rej: float = Field(0.20, ge=0.0, le=1.0)
    quality_floor_str: float = Field(0.90, ge=0.0, le=1.0)
    cost_overrun_mul: float = Field(1.50, gt=0.0)
    latency_soft_ms: int = Field(6000, ge=0)
    latency_hard_ms: int = Field(8000, ge=0)
    segment_template: str = ""
    updated_at: Optional[datetime] = None


class RecommendationSettingUpdate(CamelModel):
    """Partial update body for PUT /admin/settings/{scenario}."""
    mode: Optional[Literal["rule", "ml"]] = None
    m_coarse: Optional[int] = Field(None, ge=1)
    k_fine: Optional[int] = Field(None, ge=1)
    epsilon: Optional[float] = Field(None, ge=0.0, le=1.0)
    min_explore: Optional[float] = Field(None, ge=0.0, le=1.0)
    diversity: Optional[bool] = None
    quality_floor_rej: Optional[float] = Field(None, ge=0.0, le=1.0)
    quality_floor_str: Optional[float] = Field(None, ge=0.0, le=1.0)
    cost_overrun_mul: Optional[float] = Field(None, gt=0.0)
    latency_soft_ms: Optional[int] = Field(None, ge=0)
    latency_hard_ms: Optional[int] = Field(None, ge=0)
    segment_template: Optional[str] = None


# ── Rank request / response ──────────────────────────────────────

class SubjectRef(CamelModel):
    entity_type: str
    entity_id: Optional[str] = None


class TaskInput(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    subject_ref: Optional[SubjectRef] = None
    category: Optional[str] = None
    product_id: Optional[str] = None
    template_id: Optional[str] = None
    language: Optional[str] = None
    channel: Optional[str] = None
    region: Optional[str] = None
    task_type: Optional[str] = None
    content_type: Optional[str] = None
    json_requirement: bool = False
    require_tool_use: bool = False
    budget_tier: Optional[Literal["low", "mid", "high"]] = None
    style_tags: List[str] = Field(default_factory=list)

    def subject_key(self) -> Optional[str]:
        if self.subject_ref and self.subject_ref.entity_id:
            return f"{self.subject_ref.entity_type}:{self.subject_ref.entity_id}"
        if self.product_id:
            return f"product:{self.product_id}"
        return None


class ContextInput(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    region: Optional[str] = None
    channel: Optional[str] = None
    budget_tier: Optional[Literal["low", "mid", "high"]] = None
    max_latency_ms: Optional[float] = Field(None, ge=0)
    festival: Optional[str] = None
    audience: Optional[str] = None


class Constraints(CamelModel):
    max_cost_usd: Optional[float] = Field(None, ge=0, alias="maxCostUSD")
    max_latency_ms: Optional[float] = Field(None, ge=0)
    allow_providers: List[str] = Field(default_factory=list)
    deny_providers: List[str] = Field(default_factory=list)
    require_json_mode: bool = False
    min_safety_level: Optional[Literal["low", "medium", "high"]] = None


class RankOptions(CamelModel):
    top_k: Optional[int] = Field(None, ge=1)
    explore: bool = True
    strategy_version: Optional[str] = None
    request_id: Optional[str] = None


class RankRequest(CamelModel):
    scenario: str
    task: Optional[TaskInput] = None
    context: ContextInput = Field(default_factory=ContextInput)
    constraints: Constraints = Field(default_factory=Constraints)
    options: RankOptions = Field(default_factory=RankOptions)


class Alternatives(CamelModel):
    fine_top2: Optional[Candidate] = None
    coarse_extras: List[Candidate] = Field(default_factory=list)
    out_of_pool: List[Candidate] = Field(default_factory=list)


class RankResponse(CamelModel):
    decision_id: str
    candidate_set_id: str
    scenario: str
    chosen: Candidate
    top_k: List[Candidate] = Field(default_factory=list)
    alternatives: Alternatives = Field(default_factory=Alternatives)
    mode: DecisionMode = DecisionMode.EXPLOIT
    fallback_used: bool = False
    strategy_version: str = "v1"
    warnings: List[str] = Field(default_factory=list)
    timings: Dict[str, float] = Field(default_factory=dict)


# ── Feedback request / response ──────────────────────────────────

class FeedbackRequest(CamelModel):
    decision_id: str = Field(..., min_length=1)
    user_choice: Optional[str] = None
    type: Optional[str] = None
    reason: Optional[str] = None
    event_type: Optional[EventType] = None
    payload: Optional[Dict[str, Any]] = None

    # Outcome fields (omitted fields keep their previous value)
    latency_ms: Optional[float] = Field(None, ge=0)
    cost_actual: Optional[float] = Field(None, ge=0)
    quality_score: Optional[float] = Field(None, ge=0.0, le=1.0)
    conversion: Optional[bool] = None
    rejected: Optional[bool] = None
    edit_distance: Optional[float] = Field(None, ge=0.0)
    notes: Optional[str] = None

    # Implicit-signal inputs
    added_selling_points: Optional[int] = Field(None, ge=0)
    added_pain_points: Optional[int] = Field(None, ge=0)
    rerun_count: Optional[int] = Field(None, ge=0)

    def outcome_values(self) -> Dict[str, Any]:
        """Outcome fields that were actually provided in this post."""
        return {
            name: getattr(self, name)
            for name in OUTCOME_FIELDS
            if getattr(self, name) is not None
        }


class FeedbackResponse(CamelModel):
    decision_id: str
    feedback: Optional[Feedback] = None
    events: List[Event] = Field(default_factory=list)
    outcome: Optional[Outcome] = None
    implicit_signal: Optional[SignalKind] = None


class ExecutionReport(CamelModel):
    """Executor → breaker accounting for one provider/model call."""
    key: str = Field(..., min_length=1)
    success: bool


class HealthResponse(CamelModel):
    status: str
    service: str = "recommender"
    version: str = "1.0.0"
    store: str = "memory"
    uptime_seconds: float = 0.0
    circuit_breakers: Dict[str, Any] = Field(default_factory=dict)
    metrics_summary: Dict[str, Any] = Field(default_factory=dict)
