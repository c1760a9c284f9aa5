"""
Tests for the refinement loop and job-level orchestration.
"""

import asyncio
import os
import sys
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from conftest import FakeRenderer, ScriptedCritic, make_critique, make_frames
from core.config import Config
from core.exceptions import CollaboratorTimeout, PlanGenerationError, RenderFailure
from services.jobs import JobStatus, Stage
from services.refinement import RefinementOrchestrator, apply_corrections


HOOK_FIX = [{"scene": "hook", "field": "headline", "reason": "too long", "suggestedChange": "Paid Faster"}]


def orchestrator_for(registry, config, critic, renderer=None, planner=None) -> RefinementOrchestrator:
    return RefinementOrchestrator(
        registry, critic, renderer=renderer or FakeRenderer(), planner=planner, config=config
    )


class SlowCritic:
    def __init__(self, delay: float):
        self.delay = delay

    async def analyze(self, frames, plan, iteration):
        await asyncio.sleep(self.delay)
        return make_critique(9, True)


class TestRefineLoop:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_iterations", [1, 2, 3, 5])
    async def test_never_more_renders_than_iterations(self, registry, config, plan, max_iterations):
        renderer = FakeRenderer()
        critic = ScriptedCritic([make_critique(4, False, text_changes=HOOK_FIX)])
        orchestrator = orchestrator_for(registry, config, critic, renderer)

        result = await orchestrator.refine(plan, max_iterations=max_iterations)

        assert renderer.calls == max_iterations
        assert result.iterations == max_iterations
        assert len(result.all_critiques) == max_iterations

    @pytest.mark.asyncio
    async def test_accepted_on_first_try(self, registry, config, plan):
        renderer = FakeRenderer()
        critic = ScriptedCritic([make_critique(9, True, text_changes=HOOK_FIX)])
        orchestrator = orchestrator_for(registry, config, critic, renderer)

        result = await orchestrator.refine(plan, max_iterations=3)

        assert renderer.calls == 1
        assert result.iterations == 1
        assert result.final_score == 9
        # Corrections on an accepted critique are not applied
        assert result.final_plan == plan

    @pytest.mark.asyncio
    async def test_corrections_applied_between_iterations(self, registry, config, plan):
        renderer = FakeRenderer()
        critic = ScriptedCritic([make_critique(3, False, text_changes=HOOK_FIX)])
        orchestrator = orchestrator_for(registry, config, critic, renderer)

        with patch(
            "services.refinement.orchestrator.apply_corrections", wraps=apply_corrections
        ) as applied:
            result = await orchestrator.refine(plan, max_iterations=3)

        assert renderer.calls == 3
        assert applied.call_count == 2
        assert renderer.plans[0].story.hook.headline == "Stop Chasing Invoices"
        assert renderer.plans[1].story.hook.headline == "Paid Faster"
        assert result.final_plan.story.hook.headline == "Paid Faster"
        assert result.final_score == 3
        # The caller's plan is never modified
        assert plan.story.hook.headline == "Stop Chasing Invoices"

    @pytest.mark.asyncio
    async def test_critic_failure_mid_run_uses_fallback(self, registry, config, plan):
        renderer = FakeRenderer()
        critic = ScriptedCritic([
            make_critique(5, False, text_changes=HOOK_FIX),
            RuntimeError("vision API exploded"),
            make_critique(6, False, text_changes=HOOK_FIX),
        ])
        orchestrator = orchestrator_for(registry, config, critic, renderer)

        result = await orchestrator.refine(plan, max_iterations=3)

        assert renderer.calls == 3
        assert result.iterations == 3
        assert result.all_critiques[1].is_fallback
        assert result.all_critiques[1].overall_score == 7
        assert result.final_score == 6
        assert result.final_plan == apply_corrections(plan, result.all_critiques[0].corrections)

    @pytest.mark.asyncio
    async def test_stops_early_without_corrections(self, registry, config, plan):
        renderer = FakeRenderer()
        critic = ScriptedCritic([make_critique(4, False)])
        orchestrator = orchestrator_for(registry, config, critic, renderer)

        result = await orchestrator.refine(plan, max_iterations=3)

        assert renderer.calls == 1
        assert result.iterations == 1
        assert result.final_plan == plan

    @pytest.mark.asyncio
    async def test_fallback_critique_continues_unchanged(self, registry, config, plan):
        renderer = FakeRenderer()
        critic = ScriptedCritic([RuntimeError("down")])
        orchestrator = orchestrator_for(registry, config, critic, renderer)

        result = await orchestrator.refine(plan, max_iterations=2)

        assert renderer.calls == 2
        assert all(c.is_fallback for c in result.all_critiques)
        assert result.final_score == 7
        assert result.final_plan == plan

    @pytest.mark.asyncio
    @pytest.mark.parametrize("max_iterations", [0, -1])
    async def test_invalid_iteration_count(self, registry, config, plan, max_iterations):
        renderer = FakeRenderer()
        orchestrator = orchestrator_for(registry, config, ScriptedCritic([make_critique(9, True)]), renderer)

        with pytest.raises(ValueError):
            await orchestrator.refine(plan, max_iterations=max_iterations)
        assert renderer.calls == 0

    @pytest.mark.asyncio
    async def test_default_iterations_from_config(self, registry, config, plan):
        config.refinement.max_iterations = 2
        renderer = FakeRenderer()
        critic = ScriptedCritic([make_critique(3, False, text_changes=HOOK_FIX)])
        orchestrator = orchestrator_for(registry, config, critic, renderer)

        result = await orchestrator.refine(plan)
        assert result.iterations == 2

    @pytest.mark.asyncio
    async def test_plain_callable_renderer(self, registry, config, plan):
        seen = []

        async def render(p):
            seen.append(p)
            return make_frames()

        orchestrator = orchestrator_for(registry, config, ScriptedCritic([make_critique(9, True)]))
        result = await orchestrator.refine(plan, renderer=render)

        assert seen == [plan]
        assert result.iterations == 1

    @pytest.mark.asyncio
    async def test_render_failure_carries_critiques(self, registry, config, plan):
        renderer = FakeRenderer(fail_on_call=2)
        critic = ScriptedCritic([make_critique(4, False, text_changes=HOOK_FIX)])
        orchestrator = orchestrator_for(registry, config, critic, renderer)

        with pytest.raises(RenderFailure) as excinfo:
            await orchestrator.refine(plan, max_iterations=3)

        assert excinfo.value.iteration == 2
        assert len(excinfo.value.critiques) == 1

    @pytest.mark.asyncio
    async def test_unexpected_renderer_error_is_render_failure(self, registry, config, plan):
        async def broken(p):
            raise OSError("disk full")

        orchestrator = orchestrator_for(registry, config, ScriptedCritic([make_critique(9, True)]))

        with pytest.raises(RenderFailure, match="disk full"):
            await orchestrator.refine(plan, renderer=broken)

    @pytest.mark.asyncio
    async def test_empty_frames_is_render_failure(self, registry, config, plan):
        async def nothing(p):
            return []

        orchestrator = orchestrator_for(registry, config, ScriptedCritic([make_critique(9, True)]))

        with pytest.raises(RenderFailure):
            await orchestrator.refine(plan, renderer=nothing)

    @pytest.mark.asyncio
    async def test_render_deadline(self, registry, config, plan):
        renderer = FakeRenderer(delay=0.5)
        orchestrator = orchestrator_for(registry, config, ScriptedCritic([make_critique(9, True)]), renderer)

        with pytest.raises(CollaboratorTimeout) as excinfo:
            await orchestrator.refine(plan, render_timeout=0.05)

        assert excinfo.value.collaborator == "renderer"
        assert excinfo.value.iteration == 1

    @pytest.mark.asyncio
    async def test_critique_deadline(self, registry, config, plan):
        orchestrator = orchestrator_for(registry, config, SlowCritic(0.5))

        with pytest.raises(CollaboratorTimeout) as excinfo:
            await orchestrator.refine(plan, critique_timeout=0.05)

        assert excinfo.value.collaborator == "critic"

    @pytest.mark.asyncio
    async def test_deadlines_from_config(self, registry, config, plan):
        config.refinement.render_timeout_seconds = 0.05
        renderer = FakeRenderer(delay=0.5)
        orchestrator = orchestrator_for(registry, config, ScriptedCritic([make_critique(9, True)]), renderer)

        with pytest.raises(CollaboratorTimeout):
            await orchestrator.refine(plan)

    @pytest.mark.asyncio
    async def test_critic_timeout_error_under_deadline_uses_fallback(self, registry, plan):
        # Shipped deadlines; the critic's own client timed out, not the deadline
        config = Config()
        assert config.refinement.critique_timeout_seconds
        critic = ScriptedCritic([TimeoutError("vision upstream read timeout")])
        orchestrator = orchestrator_for(registry, config, critic)

        result = await orchestrator.refine(plan, max_iterations=2)

        assert result.iterations == 2
        assert all(c.is_fallback for c in result.all_critiques)

    @pytest.mark.asyncio
    async def test_renderer_timeout_error_under_deadline_is_render_failure(self, registry, plan):
        config = Config()
        assert config.refinement.render_timeout_seconds

        async def stalled(p):
            raise TimeoutError("still service read timeout")

        orchestrator = orchestrator_for(registry, config, ScriptedCritic([make_critique(9, True)]))

        with pytest.raises(RenderFailure, match="read timeout") as excinfo:
            await orchestrator.refine(plan, renderer=stalled)
        assert not isinstance(excinfo.value, CollaboratorTimeout)

    @pytest.mark.asyncio
    async def test_critique_dict_is_validated(self, registry, config, plan):
        critic = ScriptedCritic([{"overallScore": 9, "isAcceptable": True}])
        orchestrator = orchestrator_for(registry, config, critic)

        result = await orchestrator.refine(plan, max_iterations=3)

        assert result.iterations == 1
        assert result.final_score == 9
        assert not result.all_critiques[0].is_fallback

    @pytest.mark.asyncio
    @pytest.mark.parametrize("returned", [{"verdict": "looks fine"}, "9/10", None])
    async def test_malformed_critique_uses_fallback(self, registry, config, plan, returned):
        critic = ScriptedCritic([returned])
        orchestrator = orchestrator_for(registry, config, critic)

        result = await orchestrator.refine(plan, max_iterations=2)

        assert result.iterations == 2
        assert all(c.is_fallback for c in result.all_critiques)
        assert result.final_plan == plan


class TestRunJob:

    @pytest.mark.asyncio
    async def test_completes_job_with_result(self, registry, config, plan):
        critic = ScriptedCritic([make_critique(5, False, text_changes=HOOK_FIX), make_critique(9, True)])
        orchestrator = orchestrator_for(registry, config, critic)
        job_id = registry.create_job()

        result = await orchestrator.run(job_id, plan)

        job = registry.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.result is result
        assert job.progress == 100
        assert result.iterations == 2
        assert "9/10" in job.last_message

    @pytest.mark.asyncio
    async def test_history_is_monotonic(self, registry, config, plan):
        critic = ScriptedCritic([make_critique(3, False, text_changes=HOOK_FIX)])
        orchestrator = orchestrator_for(registry, config, critic)
        job_id = registry.create_job()

        await orchestrator.run(job_id, plan, max_iterations=3)

        history = registry.get_job(job_id).history
        values = [u.progress for u in history]
        assert values == sorted(values)
        assert values[-1] == 100
        stages = [u.stage for u in history]
        assert Stage.RENDERING_FRAMES in stages
        assert Stage.ITERATION_2 in stages
        assert Stage.ITERATION_3 in stages
        assert stages[-1] == Stage.COMPLETE
        assert sum(1 for u in history if u.stage == Stage.COMPLETE) == 1

    @pytest.mark.asyncio
    async def test_render_failure_fails_job_with_audit(self, registry, config, plan):
        renderer = FakeRenderer(fail_on_call=2)
        critic = ScriptedCritic([make_critique(4, False, text_changes=HOOK_FIX)])
        orchestrator = orchestrator_for(registry, config, critic, renderer)
        job_id = registry.create_job()

        result = await orchestrator.run(job_id, plan)

        job = registry.get_job(job_id)
        assert result is None
        assert job.status == JobStatus.FAILED
        assert job.error == "Remotion still service unavailable"
        assert job.audit["failedIteration"] == 2
        assert job.audit["critiques"][0]["overallScore"] == 4
        assert job.history[-1].stage == Stage.ERROR

    @pytest.mark.asyncio
    async def test_first_render_failure_has_no_audit(self, registry, config, plan):
        orchestrator = orchestrator_for(
            registry, config, ScriptedCritic([make_critique(9, True)]), FakeRenderer(fail_on_call=1)
        )
        job_id = registry.create_job()

        await orchestrator.run(job_id, plan)

        job = registry.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.audit is None

    @pytest.mark.asyncio
    async def test_timeout_fails_job(self, registry, config, plan):
        orchestrator = orchestrator_for(
            registry, config, ScriptedCritic([make_critique(9, True)]), FakeRenderer(delay=0.5)
        )
        job_id = registry.create_job()

        result = await orchestrator.run(job_id, plan, render_timeout=0.05)

        job = registry.get_job(job_id)
        assert result is None
        assert job.status == JobStatus.FAILED
        assert "deadline" in job.error

    @pytest.mark.asyncio
    async def test_critic_timeout_error_completes_job(self, registry, plan):
        orchestrator = orchestrator_for(
            registry, Config(), ScriptedCritic([TimeoutError("vision upstream read timeout")])
        )
        job_id = registry.create_job()

        result = await orchestrator.run(job_id, plan, max_iterations=2)

        job = registry.get_job(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.error is None
        assert len(result.all_critiques) == 2
        assert all(c.is_fallback for c in result.all_critiques)

    @pytest.mark.asyncio
    async def test_renderer_timeout_error_is_not_a_deadline(self, registry, plan):
        async def stalled(p):
            raise TimeoutError("still service read timeout")

        orchestrator = orchestrator_for(registry, Config(), ScriptedCritic([make_critique(9, True)]))
        job_id = registry.create_job()

        result = await orchestrator.run(job_id, plan, renderer=stalled)

        job = registry.get_job(job_id)
        assert result is None
        assert job.status == JobStatus.FAILED
        assert "read timeout" in job.error
        assert "deadline" not in job.error

    @pytest.mark.asyncio
    async def test_invalid_iterations_leave_job_untouched(self, registry, config, plan):
        orchestrator = orchestrator_for(registry, config, ScriptedCritic([make_critique(9, True)]))
        job_id = registry.create_job()

        with pytest.raises(ValueError):
            await orchestrator.run(job_id, plan, max_iterations=0)

        job = registry.get_job(job_id)
        assert job.status == JobStatus.PENDING
        assert job.history == []

    @pytest.mark.asyncio
    async def test_cancellation_fails_job(self, registry, config, plan):
        orchestrator = orchestrator_for(
            registry, config, ScriptedCritic([make_critique(9, True)]), FakeRenderer(delay=5)
        )
        job_id = registry.create_job()

        task = asyncio.create_task(orchestrator.run(job_id, plan))
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        job = registry.get_job(job_id)
        assert job.status == JobStatus.FAILED
        assert job.error == "cancelled"

    @pytest.mark.asyncio
    async def test_unexpected_error_fails_job(self, registry, config, plan):
        orchestrator = orchestrator_for(registry, config, ScriptedCritic([make_critique(9, True)]))
        job_id = registry.create_job()

        with patch.object(orchestrator, "refine", AsyncMock(side_effect=KeyError("boom"))):
            result = await orchestrator.run(job_id, plan)

        assert result is None
        assert registry.get_job(job_id).status == JobStatus.FAILED


class TestRunFromBrief:

    @pytest.mark.asyncio
    async def test_drafts_then_refines(self, registry, config, plan):
        planner = MagicMock()
        planner.generate = AsyncMock(return_value=plan)
        critic = ScriptedCritic([make_critique(9, True)])
        orchestrator = orchestrator_for(registry, config, critic, planner=planner)
        job_id = registry.create_job()

        result = await orchestrator.run_from_brief(job_id, "Invoicing app for plumbers")

        planner.generate.assert_awaited_once_with("Invoicing app for plumbers", None)
        assert result.final_score == 9
        stages = [u.stage for u in registry.get_job(job_id).history]
        assert stages[:4] == [Stage.INITIALIZING, Stage.ANALYZING, Stage.GENERATING_PLAN, Stage.PLAN_COMPLETE]
        assert stages[-1] == Stage.COMPLETE

    @pytest.mark.asyncio
    async def test_refinement_disabled(self, registry, config, plan):
        planner = MagicMock()
        planner.generate = AsyncMock(return_value=plan)
        renderer = FakeRenderer()
        critic = ScriptedCritic([make_critique(9, True)])
        orchestrator = orchestrator_for(registry, config, critic, renderer, planner=planner)
        job_id = registry.create_job()

        result = await orchestrator.run_from_brief(job_id, "Invoicing app", enable_refinement=False)

        assert result.final_plan == plan
        assert result.iterations == 0
        assert result.final_score is None
        assert renderer.calls == 0
        assert critic.calls == []
        assert registry.get_job(job_id).status == JobStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_plan_generation_failure(self, registry, config):
        planner = MagicMock()
        planner.generate = AsyncMock(side_effect=PlanGenerationError("Planner returned invalid JSON"))
        orchestrator = orchestrator_for(registry, config, ScriptedCritic([make_critique(9, True)]), planner=planner)
        job_id = registry.create_job()

        result = await orchestrator.run_from_brief(job_id, "Invoicing app")

        job = registry.get_job(job_id)
        assert result is None
        assert job.status == JobStatus.FAILED
        assert job.error == "Planner returned invalid JSON"

    @pytest.mark.asyncio
    async def test_without_planner(self, registry, config):
        orchestrator = orchestrator_for(registry, config, ScriptedCritic([make_critique(9, True)]))
        job_id = registry.create_job()

        assert await orchestrator.run_from_brief(job_id, "Invoicing app") is None
        assert registry.get_job(job_id).status == JobStatus.FAILED


class TestConcurrentJobs:

    @pytest.mark.asyncio
    async def test_jobs_run_side_by_side(self, registry, config, plan):
        critics = {
            "accepted": ScriptedCritic([make_critique(9, True)]),
            "corrected": ScriptedCritic([make_critique(3, False, text_changes=HOOK_FIX)]),
            "fallback": ScriptedCritic([RuntimeError("vision API down")]),
        }
        jobs = {name: registry.create_job(f"job_{name}") for name in critics}
        renderers = {name: FakeRenderer(delay=0.01) for name in critics}

        async def run(name):
            job_orchestrator = orchestrator_for(registry, config, critics[name], renderers[name])
            return await job_orchestrator.run(jobs[name], plan, max_iterations=3)

        results = dict(zip(critics, await asyncio.gather(*(run(name) for name in critics))))

        assert results["accepted"].iterations == 1
        assert results["accepted"].final_score == 9
        assert results["corrected"].iterations == 3
        assert results["corrected"].final_plan.story.hook.headline == "Paid Faster"
        assert results["fallback"].iterations == 3
        assert results["fallback"].final_plan == plan
        assert renderers["accepted"].calls == 1
        assert renderers["corrected"].calls == 3

        for name, job_id in jobs.items():
            job = registry.get_job(job_id)
            assert job.status == JobStatus.COMPLETED
            assert job.result is results[name]
            assert all(u.job_id == job_id for u in job.history)
            values = [u.progress for u in job.history]
            assert values == sorted(values)
            assert job.history[-1].stage == Stage.COMPLETE
            assert sum(1 for u in job.history if u.stage == Stage.COMPLETE) == 1

    @pytest.mark.asyncio
    async def test_shared_orchestrator_runs_jobs_concurrently(self, registry, config, plan):
        renderer = FakeRenderer(delay=0.01)
        critic = ScriptedCritic([make_critique(4, False, text_changes=HOOK_FIX)])
        orchestrator = orchestrator_for(registry, config, critic, renderer)
        job_ids = [registry.create_job() for _ in range(3)]

        results = await asyncio.gather(*(orchestrator.run(job_id, plan, max_iterations=2) for job_id in job_ids))

        assert renderer.calls == 6
        assert len({id(r) for r in results}) == 3
        for job_id, result in zip(job_ids, results):
            job = registry.get_job(job_id)
            assert job.status == JobStatus.COMPLETED
            assert job.result is result
            assert result.iterations == 2
            assert all(u.job_id == job_id for u in job.history)
