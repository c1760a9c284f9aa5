"""
Refinement Orchestrator

Drives the render → critique → correct loop for a plan and reports job
progress through the registry.

Termination:
- stop when a critique is acceptable with a score of 8 or more
- otherwise apply its corrections, unless this was the final iteration
- stop early when a critique is not acceptable and offers no corrections
- otherwise carry on with the plan unchanged (e.g. after a fallback critique)

Failures:
- renderer errors and deadline overruns fail the job
- critic errors and malformed critiques become the fallback critique
- cancelling a running job fails it and re-raises CancelledError

Usage:
    orchestrator = RefinementOrchestrator(registry, critic, renderer)
    job_id = registry.create_job()
    result = await orchestrator.run(job_id, plan)
"""

import asyncio
import logging
from typing import Any, Awaitable, Optional, TypeVar

from pydantic import ValidationError

from core.config import Config, get_config
from core.exceptions import CollaboratorTimeout, PlanGenerationError, RenderFailure
from services.jobs.progress import ProgressHelper
from services.jobs.registry import JobRegistry

from .corrections import apply_corrections
from .critic import VisualCritic
from .models import Critique, Plan, ProvidedImage, RefinementResult, SceneFrame
from .planner import PlanGenerator
from .renderer import as_renderer

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _DeadlineExpired(Exception):
    """The caller deadline ran out before the collaborator answered."""


async def _within_deadline(aw: Awaitable[T], timeout: Optional[float]) -> T:
    """
    Await a collaborator call under a caller deadline.

    Only an overrun of the deadline raises _DeadlineExpired; a TimeoutError
    raised by the collaborator itself propagates unchanged.
    """
    task = asyncio.ensure_future(aw)
    try:
        done, _ = await asyncio.wait({task}, timeout=timeout)
    except asyncio.CancelledError:
        task.cancel()
        raise
    if not done:
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise _DeadlineExpired()
    return task.result()


def _deadline(value: Optional[float]) -> Optional[float]:
    return value if value and value > 0 else None


class RefinementOrchestrator:
    """
    Coordinates the renderer, the visual critic and the job registry.

    Args:
        registry: Job registry receiving progress updates
        critic: Visual critic
        renderer: Default frame renderer (FrameRenderer or plain callable)
        planner: Plan generator for run_from_brief
        config: Configuration (iteration default, collaborator deadlines)
    """

    def __init__(
        self,
        registry: JobRegistry,
        critic: VisualCritic,
        renderer: Any = None,
        planner: Optional[PlanGenerator] = None,
        config: Optional[Config] = None,
    ):
        self.registry = registry
        self.critic = critic
        self.renderer = renderer
        self.planner = planner
        self.config = config or get_config()

    def resolve_max_iterations(self, max_iterations: Optional[int]) -> int:
        if max_iterations is None:
            max_iterations = self.config.refinement.max_iterations
        if max_iterations < 1:
            raise ValueError(f"max_iterations must be at least 1, got {max_iterations}")
        return max_iterations

    async def refine(
        self,
        plan: Plan,
        renderer: Any = None,
        max_iterations: Optional[int] = None,
        progress: Optional[ProgressHelper] = None,
        render_timeout: Optional[float] = None,
        critique_timeout: Optional[float] = None,
    ) -> RefinementResult:
        """
        Run the refinement loop on a plan.

        Args:
            plan: Initial plan (never modified)
            renderer: Frame renderer; defaults to the orchestrator's
            max_iterations: Render/critique cycles allowed (>= 1)
            progress: Optional progress reporting for a job
            render_timeout: Deadline for one render_frames call, seconds
            critique_timeout: Deadline for one critic call, seconds

        Returns:
            RefinementResult with the final plan and every critique

        Raises:
            ValueError: If max_iterations < 1
            RenderFailure: If rendering fails; carries the critiques so far
            CollaboratorTimeout: If a render or critique exceeds its deadline
        """
        max_iterations = self.resolve_max_iterations(max_iterations)
        renderer = as_renderer(renderer or self.renderer)
        if render_timeout is None:
            render_timeout = self.config.refinement.render_timeout_seconds
        if critique_timeout is None:
            critique_timeout = self.config.refinement.critique_timeout_seconds

        current_plan = plan
        critiques: list[Critique] = []

        logger.info(f"Starting refinement loop for plan {plan.id} (max iterations: {max_iterations})")

        for iteration in range(1, max_iterations + 1):
            logger.info(f"=== Iteration {iteration}/{max_iterations} ===")
            if progress is not None:
                progress.iteration_started(iteration)

            frames = await self._render(renderer, current_plan, iteration, critiques, progress, _deadline(render_timeout))

            if progress is not None:
                progress.vision_analysis(iteration)
            critique = await self._critique(frames, current_plan, iteration, critiques, _deadline(critique_timeout))
            critiques.append(critique)

            if progress is not None:
                progress.critique_received(iteration, critique.overall_score, critique.accepted)

            if critique.accepted:
                logger.info(f"Plan accepted with score {critique.overall_score:g}/10")
                break

            if not critique.corrections.is_empty():
                if iteration < max_iterations:
                    logger.info("Applying corrections...")
                    if progress is not None:
                        progress.applying_fixes(iteration, critique.overall_score)
                    current_plan = apply_corrections(current_plan, critique.corrections)
            elif not critique.is_acceptable:
                logger.info(f"Score {critique.overall_score:g}/10 with no corrections, stopping early")
                break

        final = critiques[-1]
        return RefinementResult(
            final_plan=current_plan,
            iterations=len(critiques),
            final_score=final.overall_score,
            all_critiques=critiques,
        )

    async def _render(
        self,
        renderer,
        plan: Plan,
        iteration: int,
        critiques: list[Critique],
        progress: Optional[ProgressHelper],
        timeout: Optional[float],
    ) -> list[SceneFrame]:
        on_frame = None
        if progress is not None:
            def on_frame(current: int, total: int):
                progress.rendering_frames(iteration, current, total)

        try:
            frames = await _within_deadline(renderer.render_frames(plan, on_frame=on_frame), timeout)
        except _DeadlineExpired as e:
            raise CollaboratorTimeout("renderer", timeout, iteration=iteration, critiques=critiques) from e
        except RenderFailure as e:
            e.iteration = e.iteration or iteration
            e.critiques = list(critiques)
            raise
        except Exception as e:
            raise RenderFailure(f"Frame rendering failed: {e}", iteration=iteration, critiques=critiques) from e

        if not frames:
            raise RenderFailure("Renderer returned no frames", iteration=iteration, critiques=critiques)
        return frames

    async def _critique(
        self,
        frames: list[SceneFrame],
        plan: Plan,
        iteration: int,
        critiques: list[Critique],
        timeout: Optional[float],
    ) -> Critique:
        try:
            critique = await _within_deadline(self.critic.analyze(frames, plan, iteration), timeout)
        except _DeadlineExpired as e:
            raise CollaboratorTimeout("critic", timeout, iteration=iteration, critiques=critiques) from e
        except Exception as e:
            logger.warning(f"Visual critic raised on iteration {iteration}, using fallback critique: {e!r}")
            return Critique.fallback()

        if isinstance(critique, Critique):
            return critique
        try:
            return Critique.model_validate(critique)
        except ValidationError as e:
            logger.warning(
                f"Visual critic returned a malformed critique on iteration {iteration}, "
                f"using fallback critique: {e.error_count()} errors"
            )
            return Critique.fallback()

    async def run(
        self,
        job_id: str,
        plan: Plan,
        renderer: Any = None,
        max_iterations: Optional[int] = None,
        render_timeout: Optional[float] = None,
        critique_timeout: Optional[float] = None,
    ) -> Optional[RefinementResult]:
        """
        Refine a plan as a tracked job.

        Reports stages to the registry, completes the job with the result
        or fails it. Collaborator failures never propagate.

        Returns:
            RefinementResult, or None if the job failed

        Raises:
            ValueError: If max_iterations < 1 (before the job is touched)
            asyncio.CancelledError: If the run is cancelled (job is failed first)
        """
        max_iterations = self.resolve_max_iterations(max_iterations)
        progress = ProgressHelper(self.registry, job_id, max_iterations)

        progress.start()
        progress.plan_complete()
        return await self._refine_job(
            job_id, progress, plan, renderer, max_iterations, render_timeout, critique_timeout
        )

    async def run_from_brief(
        self,
        job_id: str,
        brief: str,
        provided_images: Optional[list[ProvidedImage]] = None,
        renderer: Any = None,
        max_iterations: Optional[int] = None,
        enable_refinement: bool = True,
        render_timeout: Optional[float] = None,
        critique_timeout: Optional[float] = None,
    ) -> Optional[RefinementResult]:
        """
        Draft a plan from a brief, then refine it as a tracked job.

        With enable_refinement=False the drafted plan is the result.
        """
        max_iterations = self.resolve_max_iterations(max_iterations)
        progress = ProgressHelper(self.registry, job_id, max_iterations)

        progress.start()
        progress.analyzing()
        try:
            progress.generating_plan()
            if self.planner is None:
                raise PlanGenerationError("No plan generator configured")
            plan = await self.planner.generate(brief, provided_images)
        except asyncio.CancelledError:
            progress.error("cancelled")
            raise
        except PlanGenerationError as e:
            progress.error(e.message)
            return None
        except Exception as e:
            logger.exception(f"Plan generation crashed for job {job_id}")
            progress.error(f"Plan generation failed: {e}")
            return None
        progress.plan_complete()

        if not enable_refinement:
            result = RefinementResult(final_plan=plan, iterations=0, final_score=None)
            progress.finalizing()
            progress.complete(result)
            return result

        return await self._refine_job(
            job_id, progress, plan, renderer, max_iterations, render_timeout, critique_timeout
        )

    async def _refine_job(
        self,
        job_id: str,
        progress: ProgressHelper,
        plan: Plan,
        renderer: Any,
        max_iterations: int,
        render_timeout: Optional[float],
        critique_timeout: Optional[float],
    ) -> Optional[RefinementResult]:
        try:
            result = await self.refine(
                plan,
                renderer=renderer,
                max_iterations=max_iterations,
                progress=progress,
                render_timeout=render_timeout,
                critique_timeout=critique_timeout,
            )
        except asyncio.CancelledError:
            logger.warning(f"Job {job_id} cancelled")
            progress.error("cancelled")
            raise
        except RenderFailure as e:
            logger.error(f"Refinement failed for job {job_id}: {e.message}")
            progress.error(e.message, audit=self._audit(e.critiques, e.iteration))
            return None
        except Exception as e:
            logger.exception(f"Refinement crashed for job {job_id}")
            progress.error(f"Refinement failed: {e}")
            return None

        progress.finalizing()
        progress.complete(result, score=result.final_score)
        logger.info(
            f"Job {job_id} refined in {result.iterations} iteration(s), final score {result.final_score:g}/10"
        )
        return result

    @staticmethod
    def _audit(critiques: list[Critique], iteration: Optional[int]) -> Optional[dict[str, Any]]:
        if not critiques:
            return None
        return {
            "failedIteration": iteration,
            "critiques": [critique.to_dict() for critique in critiques],
        }
