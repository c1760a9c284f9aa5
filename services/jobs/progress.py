"""
Stage Progress Helper

Named progress calls for one job, mapped onto the stage bands.

Iteration layout:
- iteration 1 walks rendering_frames → vision_analysis → applying_fixes
- iteration 2 reports all of its sub-steps under iteration_2
- iterations 3..N split the iteration_3 band evenly

Inside an iteration the band is divided between rendering (first half),
critique (next 30%) and corrections (last 20%). Frame rendering advances
proportionally to frames done.

The helper never lets progress go backwards and never moves to an
earlier stage; the registry itself records whatever it is given.
"""

import logging
from typing import Any, Optional

from .models import ProgressDetails, ProgressUpdate, Stage
from .registry import JobRegistry

logger = logging.getLogger(__name__)

_SUBSTEP_SPAN = {
    "render": (0.0, 0.5),
    "critique": (0.5, 0.8),
    "fixes": (0.8, 1.0),
}

_FIRST_ITERATION_STAGES = {
    "render": Stage.RENDERING_FRAMES,
    "critique": Stage.VISION_ANALYSIS,
    "fixes": Stage.APPLYING_FIXES,
}


class ProgressHelper:
    """
    Progress reporting for one job.

    Usage:
        progress = ProgressHelper(registry, job_id, max_iterations=3)
        progress.start()
        progress.rendering_frames(iteration=1, current=2, total=6)
        progress.complete(result, score=8)
    """

    def __init__(self, registry: JobRegistry, job_id: str, max_iterations: int = 3):
        self.registry = registry
        self.job_id = job_id
        self.max_iterations = max_iterations
        self._stage: Optional[Stage] = None
        self._progress = 0.0

    def _emit(
        self,
        stage: Stage,
        progress: float,
        message: str,
        details: Optional[ProgressDetails] = None,
    ) -> Optional[ProgressUpdate]:
        if self._stage is not None and not self._stage.can_transition_to(stage):
            logger.warning(
                f"[{self.job_id}] Stage {stage.value} would move back from {self._stage.value}; "
                f"reporting under {self._stage.value}"
            )
            stage = self._stage

        progress = max(self._progress, progress)
        update = self.registry.update_progress(self.job_id, stage, progress, message, details)
        if update is not None:
            self._stage = update.stage
            self._progress = update.progress
        return update

    def position(self, iteration: int, substep: str, fraction: float = 0.0) -> tuple[Stage, float]:
        """Stage and progress for a point inside a refinement iteration."""
        fraction = min(1.0, max(0.0, fraction))
        start, end = _SUBSTEP_SPAN[substep]

        if iteration <= 1:
            stage = _FIRST_ITERATION_STAGES[substep]
            return stage, stage.band.at(fraction, 1.0)

        if iteration == 2:
            stage = Stage.ITERATION_2
            low, high = stage.band.min, stage.band.max
        else:
            stage = Stage.ITERATION_3
            slots = max(1, self.max_iterations - 2)
            slot = min(iteration - 3, slots - 1)
            width = (stage.band.max - stage.band.min) / slots
            low = stage.band.min + slot * width
            high = low + width

        return stage, low + (start + (end - start) * fraction) * (high - low)

    def start(self):
        self._emit(Stage.INITIALIZING, 0, "Starting generation...")

    def analyzing(self):
        self._emit(Stage.ANALYZING, 5, "Analyzing your request...")

    def generating_plan(self):
        self._emit(Stage.GENERATING_PLAN, 15, "Creating the creative plan...")

    def plan_complete(self):
        self._emit(Stage.PLAN_COMPLETE, 20, "Creative plan ready")

    def iteration_started(self, iteration: int):
        """Marks the start of refinement passes after the first."""
        if iteration < 2:
            return
        stage, progress = self.position(iteration, "render")
        label = "second pass" if iteration == 2 else f"pass {iteration}/{self.max_iterations}"
        self._emit(
            stage,
            progress,
            f"Refining ({label})...",
            ProgressDetails(iteration=iteration, max_iterations=self.max_iterations),
        )

    def rendering_frames(self, iteration: int, current: int, total: int):
        stage, progress = self.position(iteration, "render", current / total if total else 0.0)
        self._emit(
            stage,
            progress,
            f"Rendering scene {current}/{total}...",
            ProgressDetails(
                step=f"scene_{current}",
                total_steps=total,
                iteration=iteration,
                max_iterations=self.max_iterations,
            ),
        )

    def vision_analysis(self, iteration: int):
        stage, progress = self.position(iteration, "critique")
        self._emit(
            stage,
            progress,
            f"Visual analysis (iteration {iteration}/{self.max_iterations})...",
            ProgressDetails(iteration=iteration, max_iterations=self.max_iterations),
        )

    def critique_received(self, iteration: int, score: float, accepted: bool):
        stage, progress = self.position(iteration, "critique", 1.0)
        verdict = "accepted" if accepted else "needs work"
        self._emit(
            stage,
            progress,
            f"Critique score {score:g}/10 ({verdict})",
            ProgressDetails(iteration=iteration, max_iterations=self.max_iterations, score=score),
        )

    def applying_fixes(self, iteration: int, score: float):
        stage, progress = self.position(iteration, "fixes")
        self._emit(
            stage,
            progress,
            f"Applying corrections (score: {score:g}/10)...",
            ProgressDetails(iteration=iteration, max_iterations=self.max_iterations, score=score),
        )

    def finalizing(self):
        self._emit(Stage.FINALIZING, 90, "Finalizing the video plan...")

    def complete(self, result: Any = None, score: Optional[float] = None):
        message = (
            f"Video plan generated! Quality score: {score:g}/10"
            if score is not None
            else "Video plan generated successfully"
        )
        details = ProgressDetails(score=score) if score is not None else None
        self.registry.complete_job(self.job_id, result, message=message, details=details)

    def error(self, message: str, audit: Optional[dict[str, Any]] = None):
        self.registry.fail_job(self.job_id, message, audit=audit)
