"""
Shared fixtures: sample plans, fake renderers and scripted critics.
"""

import asyncio
import copy
import os
import sys
from typing import Optional

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.config import Config
from core.exceptions import RenderFailure
from services.jobs import JobRegistry
from services.refinement.models import SCENE_ORDER, Critique, Plan, SceneFrame
from services.streaming import ProgressBroadcaster


PLAN_DATA = {
    "templateId": "BASE44_PREMIUM",
    "id": "plan_1700000000000",
    "createdAt": "2024-01-15T10:30:00+00:00",
    "brand": {"name": "Pipeflow", "accentColor": "#0EA5E9"},
    "story": {
        "hook": {"headline": "Stop Chasing Invoices", "subtext": "Get paid on time"},
        "problem": {
            "headline": "Cash Flow Is Stuck",
            "subtext": "Late payments pile up",
            "bullets": ["Manual reminders", "Lost emails"],
        },
        "solution": {"headline": "Meet Pipeflow", "subtext": "Automatic follow-ups"},
        "demo": {"headline": "One Click Reminders", "featurePoints": ["Templates", "Scheduling"]},
        "proof": {"stat": "5,000+", "headline": "Plumbers Paid Faster"},
        "cta": {"headline": "Start Free Today", "buttonText": "Get Started"},
    },
    "casting": {"images": []},
    "settings": {
        "intensity": "medium",
        "palette": "midnight",
        "includeGrain": True,
        "duration": "standard",
        "visualStyle": {"preset": "modern"},
    },
}


def make_critique(
    score: float,
    acceptable: bool,
    text_changes: Optional[list] = None,
    style_changes: Optional[list] = None,
    visual_changes: Optional[list] = None,
) -> Critique:
    corrections = {}
    if text_changes:
        corrections["textChanges"] = text_changes
    if style_changes:
        corrections["styleChanges"] = style_changes
    if visual_changes:
        corrections["visualChanges"] = visual_changes
    return Critique.model_validate({
        "overallScore": score,
        "isAcceptable": acceptable,
        "sceneIssues": [],
        "globalIssues": [],
        "corrections": corrections,
    })


def make_frames() -> list[SceneFrame]:
    return [
        SceneFrame(scene=scene, image=b"\x89PNG fake", timestamp=index * 2.5)
        for index, scene in enumerate(SCENE_ORDER)
    ]


class FakeRenderer:
    """Records every plan it renders and reports per-frame progress."""

    def __init__(self, fail_on_call: Optional[int] = None, delay: float = 0):
        self.plans: list[Plan] = []
        self.fail_on_call = fail_on_call
        self.delay = delay

    @property
    def calls(self) -> int:
        return len(self.plans)

    async def render_frames(self, plan, on_frame=None):
        self.plans.append(plan)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_on_call is not None and self.calls == self.fail_on_call:
            raise RenderFailure("Remotion still service unavailable")

        frames = make_frames()
        if on_frame is not None:
            for index in range(1, len(frames) + 1):
                on_frame(index, len(frames))
        return frames


class ScriptedCritic:
    """Returns critiques from a script; an Exception entry is raised instead."""

    def __init__(self, script, repeat_last: bool = True):
        self.script = list(script)
        self.repeat_last = repeat_last
        self.calls: list[tuple[Plan, int]] = []

    async def analyze(self, frames, plan, iteration):
        self.calls.append((plan, iteration))
        index = len(self.calls) - 1
        if index >= len(self.script):
            index = len(self.script) - 1
        item = self.script[index]
        if isinstance(item, Exception):
            raise item
        return item


@pytest.fixture
def plan_data() -> dict:
    return copy.deepcopy(PLAN_DATA)


@pytest.fixture
def plan(plan_data) -> Plan:
    return Plan.model_validate(plan_data)


@pytest.fixture
def frames() -> list[SceneFrame]:
    return make_frames()


@pytest.fixture
def config() -> Config:
    config = Config()
    config.refinement.max_iterations = 3
    config.refinement.render_timeout_seconds = None
    config.refinement.critique_timeout_seconds = None
    return config


@pytest.fixture
def broadcaster() -> ProgressBroadcaster:
    return ProgressBroadcaster()


@pytest.fixture
def registry(broadcaster) -> JobRegistry:
    return JobRegistry(broadcaster)


class FakeClock:
    """Settable epoch-ms clock."""

    def __init__(self, now: int = 1_700_000_000_000):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int):
        self.now += ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
