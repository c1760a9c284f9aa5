"""
Plan Refinement

Render → critique → correct loop for video plans.

Usage:
    from services.refinement import RefinementOrchestrator, GeminiVisualCritic

    orchestrator = RefinementOrchestrator(registry, GeminiVisualCritic(), renderer)
    result = await orchestrator.run(job_id, plan, max_iterations=3)
"""

from .corrections import apply_corrections
from .critic import GeminiVisualCritic, VisualCritic, parse_critique
from .models import (
    Corrections,
    Critique,
    Plan,
    ProvidedImage,
    RefinementResult,
    SceneFrame,
    validate_plan,
)
from .orchestrator import RefinementOrchestrator
from .planner import PlanGenerator, cast_images_to_roles, default_plan
from .renderer import CallableRenderer, FrameRenderer, RemotionFrameRenderer, capture_points

__all__ = [
    "CallableRenderer",
    "Corrections",
    "Critique",
    "FrameRenderer",
    "GeminiVisualCritic",
    "Plan",
    "PlanGenerator",
    "ProvidedImage",
    "RefinementOrchestrator",
    "RefinementResult",
    "RemotionFrameRenderer",
    "SceneFrame",
    "VisualCritic",
    "apply_corrections",
    "capture_points",
    "cast_images_to_roles",
    "default_plan",
    "parse_critique",
    "validate_plan",
]
