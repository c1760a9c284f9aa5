"""
Tests for stage progress reporting.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from services.jobs import JobStatus, ProgressHelper, Stage


@pytest.fixture
def job(registry):
    job_id = registry.create_job()
    return job_id, ProgressHelper(registry, job_id, max_iterations=3)


class TestPositions:

    def test_first_iteration_uses_named_stages(self, registry):
        helper = ProgressHelper(registry, "job", max_iterations=3)

        assert helper.position(1, "render", 0.5) == (Stage.RENDERING_FRAMES, 32.5)
        assert helper.position(1, "critique") == (Stage.VISION_ANALYSIS, 40)
        assert helper.position(1, "fixes") == (Stage.APPLYING_FIXES, 50)

    def test_second_iteration_stays_in_its_band(self, registry):
        helper = ProgressHelper(registry, "job", max_iterations=3)

        stages = {helper.position(2, step, f)[0] for step in ("render", "critique", "fixes") for f in (0, 1)}
        values = [helper.position(2, step, f)[1] for step in ("render", "critique", "fixes") for f in (0, 1)]

        assert stages == {Stage.ITERATION_2}
        assert min(values) == 60
        assert max(values) == 75
        assert values == sorted(values)

    def test_later_iterations_share_third_band(self, registry):
        helper = ProgressHelper(registry, "job", max_iterations=5)

        starts = [helper.position(i, "render")[1] for i in (3, 4, 5)]
        assert all(helper.position(i, "render")[0] == Stage.ITERATION_3 for i in (3, 4, 5))
        assert starts == sorted(starts)
        assert starts[0] == 75
        assert helper.position(5, "fixes", 1.0)[1] == pytest.approx(85)


class TestReporting:

    def test_full_run_is_monotonic(self, registry, job):
        job_id, progress = job

        progress.start()
        progress.analyzing()
        progress.generating_plan()
        progress.plan_complete()
        for iteration in (1, 2, 3):
            progress.iteration_started(iteration)
            for frame in range(1, 7):
                progress.rendering_frames(iteration, frame, 6)
            progress.vision_analysis(iteration)
            progress.critique_received(iteration, 6, False)
            progress.applying_fixes(iteration, 6)
        progress.finalizing()
        progress.complete({"ok": True}, score=8)

        history = registry.get_job(job_id).history
        values = [u.progress for u in history]
        orders = [u.stage.order for u in history]

        assert values == sorted(values)
        assert orders == sorted(orders)
        assert history[-1].stage == Stage.COMPLETE
        assert history[-1].progress == 100
        assert "8/10" in history[-1].message

    def test_rendering_reports_frame_details(self, registry, job):
        job_id, progress = job
        progress.rendering_frames(1, 3, 6)

        update = registry.get_job(job_id).history[-1]
        assert update.stage == Stage.RENDERING_FRAMES
        assert update.progress == 32.5
        assert update.message == "Rendering scene 3/6..."
        assert update.details.step == "scene_3"
        assert update.details.total_steps == 6

    def test_progress_never_goes_back(self, registry, job):
        job_id, progress = job
        progress.vision_analysis(1)
        progress.rendering_frames(1, 1, 6)

        history = registry.get_job(job_id).history
        assert history[-1].stage == Stage.VISION_ANALYSIS
        assert history[-1].progress == history[-2].progress

    def test_error(self, registry, job):
        job_id, progress = job
        progress.rendering_frames(1, 2, 6)
        progress.error("Renderer unavailable")

        record = registry.get_job(job_id)
        assert record.status == JobStatus.FAILED
        assert record.progress == pytest.approx(30)

    def test_first_iteration_has_no_start_marker(self, registry, job):
        job_id, progress = job
        progress.iteration_started(1)
        assert registry.get_job(job_id).history == []
