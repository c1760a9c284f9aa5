"""
Job Models

Job lifecycle records and the fixed stage state machine.

Stage order (error is reachable from any non-terminal stage):
    initializing → analyzing → generating_plan → plan_complete
    → rendering_frames → vision_analysis → applying_fixes
    → iteration_2 → iteration_3 → finalizing → complete
"""

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


# Broadcast topic that receives every job's updates; never a job id
GLOBAL_TOPIC = "*"


def now_ms() -> int:
    """Current time as epoch milliseconds."""
    return int(time.time() * 1000)


class Stage(str, Enum):
    """Named pipeline checkpoints."""
    INITIALIZING = "initializing"
    ANALYZING = "analyzing"
    GENERATING_PLAN = "generating_plan"
    PLAN_COMPLETE = "plan_complete"
    RENDERING_FRAMES = "rendering_frames"
    VISION_ANALYSIS = "vision_analysis"
    APPLYING_FIXES = "applying_fixes"
    ITERATION_2 = "iteration_2"
    ITERATION_3 = "iteration_3"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    ERROR = "error"

    @property
    def order(self) -> int:
        """Position in the pipeline; error sorts after everything."""
        return _STAGE_ORDER.index(self) if self in _STAGE_ORDER else len(_STAGE_ORDER)

    @property
    def is_terminal(self) -> bool:
        return self in (Stage.COMPLETE, Stage.ERROR)

    @property
    def band(self) -> "StageBand":
        return STAGE_BANDS[self]

    def can_transition_to(self, next_stage: "Stage") -> bool:
        """Forward-only transitions, plus the universal error exit."""
        if self.is_terminal:
            return False
        if next_stage == Stage.ERROR:
            return True
        return next_stage.order >= self.order


_STAGE_ORDER = [
    Stage.INITIALIZING,
    Stage.ANALYZING,
    Stage.GENERATING_PLAN,
    Stage.PLAN_COMPLETE,
    Stage.RENDERING_FRAMES,
    Stage.VISION_ANALYSIS,
    Stage.APPLYING_FIXES,
    Stage.ITERATION_2,
    Stage.ITERATION_3,
    Stage.FINALIZING,
    Stage.COMPLETE,
]


@dataclass(frozen=True)
class StageBand:
    """Progress-percentage hint for a stage."""
    min: float
    max: float
    label: str

    def at(self, current: float, total: float) -> float:
        """Progress proportional to sub-step completion within the band."""
        if total <= 0:
            return self.min
        fraction = min(1.0, max(0.0, current / total))
        return self.min + fraction * (self.max - self.min)


STAGE_BANDS: dict[Stage, StageBand] = {
    Stage.INITIALIZING: StageBand(0, 5, "Initializing..."),
    Stage.ANALYZING: StageBand(5, 10, "Analyzing request..."),
    Stage.GENERATING_PLAN: StageBand(10, 20, "Generating creative plan..."),
    Stage.PLAN_COMPLETE: StageBand(20, 25, "Creative plan ready"),
    Stage.RENDERING_FRAMES: StageBand(25, 40, "Rendering frames..."),
    Stage.VISION_ANALYSIS: StageBand(40, 50, "Visual analysis..."),
    Stage.APPLYING_FIXES: StageBand(50, 60, "Applying corrections..."),
    Stage.ITERATION_2: StageBand(60, 75, "Refining (second pass)..."),
    Stage.ITERATION_3: StageBand(75, 85, "Final refinement..."),
    Stage.FINALIZING: StageBand(85, 95, "Finalizing..."),
    Stage.COMPLETE: StageBand(100, 100, "Done"),
    Stage.ERROR: StageBand(0, 0, "Error"),
}


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def from_stage(cls, stage: Stage) -> "JobStatus":
        if stage == Stage.COMPLETE:
            return cls.COMPLETED
        if stage == Stage.ERROR:
            return cls.FAILED
        return cls.RUNNING


@dataclass(frozen=True)
class ProgressDetails:
    """Optional sub-step context attached to a progress update."""
    step: Optional[str] = None
    total_steps: Optional[int] = None
    iteration: Optional[int] = None
    max_iterations: Optional[int] = None
    score: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "currentStep": self.step,
            "totalSteps": self.total_steps,
            "currentIteration": self.iteration,
            "maxIterations": self.max_iterations,
            "score": self.score,
        }
        return {k: v for k, v in data.items() if v is not None}


@dataclass(frozen=True)
class ProgressUpdate:
    """One progress event. Immutable once appended to a job's history."""
    job_id: str
    stage: Stage
    progress: float
    message: str
    details: Optional[ProgressDetails] = None
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> dict[str, Any]:
        """Wire shape: {jobId, stage, progress, message, details?, timestamp}."""
        data: dict[str, Any] = {
            "jobId": self.job_id,
            "stage": self.stage.value,
            "progress": round(self.progress, 1),
            "message": self.message,
            "timestamp": self.timestamp,
        }
        if self.details is not None:
            details = self.details.to_dict()
            if details:
                data["details"] = details
        return data

    def to_sse(self, event_id: Optional[str] = None) -> str:
        """Format as SSE message."""
        lines = []
        if event_id is not None:
            lines.append(f"id: {event_id}")
        lines.append(f"event: {self.stage.value}")
        lines.append(f"data: {json.dumps(self.to_dict())}")
        return "\n".join(lines) + "\n\n"


@dataclass
class Job:
    """
    A refinement job.

    Created by the caller, mutated only through the JobRegistry,
    removed only by the stale-job sweep.
    """
    id: str
    status: JobStatus = JobStatus.PENDING
    stage: Stage = Stage.INITIALIZING
    progress: float = 0.0
    history: list[ProgressUpdate] = field(default_factory=list)
    result: Any = None
    error: Optional[str] = None
    audit: Optional[dict[str, Any]] = None
    created_at: int = field(default_factory=now_ms)
    updated_at: int = field(default_factory=now_ms)

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def last_message(self) -> Optional[str]:
        return self.history[-1].message if self.history else None

    def snapshot(self) -> dict[str, Any]:
        """Current state as a progress-shaped record (for late joiners)."""
        return {
            "jobId": self.id,
            "stage": self.stage.value,
            "progress": round(self.progress, 1),
            "message": self.last_message or STAGE_BANDS[self.stage].label,
            "status": self.status.value,
            "timestamp": now_ms(),
        }

    def to_dict(self, include_history: bool = True) -> dict[str, Any]:
        result = self.result
        if hasattr(result, "to_dict"):
            result = result.to_dict()

        data: dict[str, Any] = {
            "id": self.id,
            "status": self.status.value,
            "stage": self.stage.value,
            "progress": round(self.progress, 1),
            "result": result,
            "error": self.error,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }
        if self.audit:
            data["audit"] = self.audit
        if include_history:
            data["history"] = [update.to_dict() for update in self.history]
        return data
