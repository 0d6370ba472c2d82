import json
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .utils import utcnow


class Capability(str, Enum):
    TRANSCODE = "transcode"
    TRIM = "trim"
    SPEED_CHANGE = "speed-change"
    RESIZE = "resize"
    FORMAT_CONVERT = "format-convert"
    OVERLAY = "overlay"
    OVERLAY_TEXT = "overlay-text"
    TRANSITION = "transition"
    FILTERS = "filters"
    AUDIO_MIX = "audio-mix"
    AUDIO_FADE = "audio-fade"
    AI_GENERATE = "ai-generate"
    AVATAR = "avatar"


class CostProfile(str, Enum):
    FREE = "free"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _COST_ORDER.index(self)


_COST_ORDER = [CostProfile.FREE, CostProfile.LOW, CostProfile.MEDIUM, CostProfile.HIGH]


class ProcessingLocation(str, Enum):
    LOCAL = "local"
    CLOUD = "cloud"
    SERVER = "server"


# -----------------------------
# Execution plan (compiler output)
# -----------------------------
class TimelineSegment(BaseModel):
    model_config = ConfigDict(frozen=True)

    segment_id: str
    source_ref: str
    start_sec: float = Field(ge=0)
    end_sec: float
    required_capabilities: FrozenSet[Capability] = frozenset()

    @model_validator(mode="after")
    def _check_timing(self):
        if self.end_sec <= self.start_sec:
            raise ValueError(f"segment {self.segment_id}: end_sec must be after start_sec")
        return self

    @property
    def duration_sec(self) -> float:
        return self.end_sec - self.start_sec


class ExecutionPlan(BaseModel):
    model_config = ConfigDict(frozen=True)

    plan_id: str
    timeline: Tuple[TimelineSegment, ...] = ()
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def required_capabilities(self) -> FrozenSet[Capability]:
        caps: FrozenSet[Capability] = frozenset()
        for segment in self.timeline:
            caps = caps | segment.required_capabilities
        return caps

    @property
    def max_segment_duration(self) -> float:
        return max((s.duration_sec for s in self.timeline), default=0.0)

    @property
    def total_duration(self) -> float:
        return sum(s.duration_sec for s in self.timeline)


# -----------------------------
# Engine registry entries
# -----------------------------
class EngineEntry(BaseModel):
    """Catalog entry for one rendering/generation engine."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    capabilities: FrozenSet[Capability]
    cost_profile: CostProfile
    location: ProcessingLocation
    max_duration_sec: float
    priority_score: float = 0.0
    available: bool = True
    # completes out of band (callback or poll) and goes through the job queue
    async_completion: bool = False


class ScoreConstraints(BaseModel):
    max_cost_profile: Optional[CostProfile] = None
    force_location: Optional[ProcessingLocation] = None


# -----------------------------
# Router input / output
# -----------------------------
class RouterPhase(str, Enum):
    ROUTE_STARTED = "route_started"
    ROUTE_REJECTED = "route_rejected"
    NO_COMPATIBLE_ENGINE = "no_compatible_engine"
    DISPATCH_ATTEMPT = "dispatch_attempt"
    DISPATCH_RESULT = "dispatch_result"
    DISPATCH_FAILED = "dispatch_failed"
    DISPATCH_CANCELLED = "dispatch_cancelled"
    JOB_ENQUEUED = "job_enqueued"
    ROUTE_COMPLETED = "route_completed"
    PARTIAL_SUCCESS = "partial_success"


class RouterEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str
    route_id: str
    phase: RouterPhase
    engine_id: Optional[str] = None
    message: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    data: Dict[str, Any] = Field(default_factory=dict)


class RouteRequest(BaseModel):
    plan: ExecutionPlan
    analysis: Optional[Any] = None
    blueprint: Optional[Any] = None
    preferred_engine_id: Optional[str] = None
    max_cost_profile: Optional[CostProfile] = None
    force_location: Optional[ProcessingLocation] = None
    priority: int = 0
    job_type: str = "render"

    def constraints(self) -> ScoreConstraints:
        return ScoreConstraints(
            max_cost_profile=self.max_cost_profile,
            force_location=self.force_location,
        )


class RouterStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    FAILED = "failed"


class RouterResult(BaseModel):
    status: RouterStatus
    job_id: str
    attempted_engines: List[str] = Field(default_factory=list)
    artifacts: Dict[str, Any] = Field(default_factory=dict)
    reason: Optional[str] = None
    human_message: str = ""
    engine_id: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status == RouterStatus.SUCCESS


# -----------------------------
# Adapters and callbacks
# -----------------------------
class InvokeOutcome(BaseModel):
    success: bool
    output_ref: Optional[str] = None
    external_job_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def pending(self) -> bool:
        """Accepted by the engine, result delivered later."""
        return self.success and self.output_ref is None and self.external_job_id is not None


class CallbackStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    PROCESSING = "processing"


class CallbackPayload(BaseModel):
    external_job_id: str = Field(min_length=1)
    status: CallbackStatus
    output_ref: Optional[str] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _completed_needs_output(self):
        if self.status == CallbackStatus.COMPLETED and not self.output_ref:
            raise ValueError("completed callback without output_ref")
        return self


# -----------------------------
# Durable jobs
# -----------------------------
class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


class Job(BaseModel):
    id: str
    type: str = "render"
    status: JobStatus = Field(default=JobStatus.QUEUED)  # queued | processing | completed | failed
    priority: int = 0
    attempts: int = 0
    max_attempts: int = 3
    engine_id: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    external_job_id: Optional[str] = None
    callback_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    worker_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    next_run_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @field_validator("payload", "callback_data", mode="before")
    @classmethod
    def _decode_json(cls, value):
        if isinstance(value, str):
            return json.loads(value)
        return value

    @model_validator(mode="after")
    def _attempts_within_limit(self):
        if self.attempts > self.max_attempts:
            raise ValueError(f"attempts {self.attempts} exceed max_attempts {self.max_attempts}")
        return self

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATES

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Job":
        return cls.model_validate(dict(row))


DEFAULTS = {
    "max_attempts": 3,
    "backoff_base": 2.0,
    "backoff_max_sec": 3600,
    "stuck_threshold_sec": 7200,
    "engine_timeout_sec": 30,
    "poll_interval": 1.0,
    "max_queue_depth": 100,
    "success_window": 20,
}
