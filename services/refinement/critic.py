"""
Visual Critic

Scores rendered scene frames and proposes machine-applicable corrections.

The critic never fails a refinement run: a slow, failing or unparsable
response becomes the fallback critique (score 7, acceptable), logged at
warning level.

Only minimal plan context is sent along with the frames: brand name,
accent color, palette, visual preset and the current scene text.
"""

import asyncio
import logging
import re
from typing import Any, Optional, Protocol, runtime_checkable

from google import genai
from google.genai import types
from pydantic import ValidationError
from tenacity import retry, stop_after_attempt, wait_exponential

from core.circuit_breaker import CircuitBreaker, get_collaborator_breaker
from core.config import Config, get_config
from core.exceptions import CriticFailure, CriticMalformedResponse

from .models import Critique, Plan, SceneFrame

logger = logging.getLogger(__name__)

_CODE_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")


@runtime_checkable
class VisualCritic(Protocol):
    async def analyze(self, frames: list[SceneFrame], plan: Plan, iteration: int) -> Critique:
        ...


def strip_code_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = _CODE_FENCE.sub("", text)
    return text.strip()


def parse_critique(text: Optional[str]) -> Critique:
    """
    Validate raw critic output.

    Raises:
        CriticMalformedResponse: If the text is not a valid critique
    """
    if not text or not text.strip():
        raise CriticMalformedResponse("Empty response from visual critic")

    cleaned = strip_code_fences(text)
    try:
        return Critique.model_validate_json(cleaned)
    except ValidationError as e:
        raise CriticMalformedResponse(
            f"Critique failed validation ({e.error_count()} errors)",
            raw_response=text,
        ) from e
    except ValueError as e:
        raise CriticMalformedResponse(f"Critique is not JSON: {e}", raw_response=text) from e


def build_plan_context(plan: Plan, frames: list[SceneFrame], iteration: int, max_iterations: int = 3) -> str:
    """Text context sent next to the frames."""
    story = plan.story
    preset = plan.settings.visual_style.preset if plan.settings.visual_style else "modern"
    proof = f"{story.proof.stat} {story.proof.headline}" if story.proof.stat else story.proof.headline
    scenes = "\n".join(
        f"{i}. {frame.scene.upper()} ({frame.timestamp:g}s)" for i, frame in enumerate(frames, start=1)
    )

    return f"""VIDEO CONTEXT:
- Brand: {plan.brand.name}
- Accent color: {plan.brand.accent_color}
- Visual style: {preset}
- Palette: {plan.settings.palette}
- Iteration: {iteration}/{max_iterations}

SCENES (in order):
{scenes}

CURRENT CONTENT:
- Hook: "{story.hook.headline}"
- Problem: "{story.problem.headline}"
- Solution: "{story.solution.headline}"
- Demo: "{story.demo.headline}"
- Proof: "{proof}"
- CTA: "{story.cta.headline}" [{story.cta.button_text}]

Analyze these {len(frames)} frames and give your verdict.
"""


CRITIQUE_SYSTEM_PROMPT = """You are an expert art director for SaaS marketing videos.

You review screenshots of an automatically generated marketing video.
Identify visual problems and propose precise corrections.

Evaluation criteria:
1. Readability (critical): is text legible, with enough contrast and size?
2. Visual hierarchy (major): is the headline the focal point?
3. Consistency (major): are colors harmonious and the brand recognizable?
4. Marketing impact (major): does the hook grab attention, is the CTA visible?
5. Professionalism (minor): clean alignment, good use of space.

Rules:
- Be specific and propose actionable corrections
- Score from 1 to 10
- isAcceptable is true only when the score is 8 or more

Output JSON only:
{
  "overallScore": 7,
  "isAcceptable": false,
  "sceneIssues": [
    {"scene": "hook", "issues": ["..."], "suggestions": ["..."], "severity": "major"}
  ],
  "globalIssues": ["..."],
  "corrections": {
    "textChanges": [{"scene": "hook", "field": "headline", "reason": "...", "suggestedChange": "..."}],
    "visualChanges": [{"type": "fontSize", "scene": "hook", "reason": "...", "suggestion": "..."}],
    "styleChanges": [{"field": "palette", "currentValue": "...", "suggestedValue": "...", "reason": "..."}]
  }
}
"""


class GeminiVisualCritic:
    """
    Visual critic backed by Gemini vision.

    Usage:
        critic = GeminiVisualCritic()
        critique = await critic.analyze(frames, plan, iteration=1)
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        client: Optional[genai.Client] = None,
        breaker: Optional[CircuitBreaker] = None,
        max_iterations: int = 3,
    ):
        self.config = config or get_config()
        self._client = client
        self.breaker = breaker or get_collaborator_breaker(
            "critic", timeout=self.config.critic.timeout_seconds
        )
        self.max_iterations = max_iterations

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            self._client = genai.Client(api_key=self.config.api.google_api_key or None)
        return self._client

    async def analyze(self, frames: list[SceneFrame], plan: Plan, iteration: int) -> Critique:
        """Critique the frames; any failure yields the fallback critique."""
        logger.info(f"Analyzing {len(frames)} frames (iteration {iteration})")

        try:
            critique = await self.critique(frames, plan, iteration)
        except CriticFailure as e:
            logger.warning(f"Visual critic failed, using fallback critique: {e.message}")
            return Critique.fallback()

        logger.info(
            f"Score: {critique.overall_score:g}/10, acceptable: {critique.is_acceptable}, "
            f"{len(critique.scene_issues)} scene issues, {len(critique.global_issues)} global issues"
        )
        return critique

    async def critique(self, frames: list[SceneFrame], plan: Plan, iteration: int) -> Critique:
        """
        Critique the frames without the fallback.

        Raises:
            CriticFailure: Transport failure, timeout or open circuit
            CriticMalformedResponse: Unparsable response
        """
        try:
            contents = self._build_contents(frames, plan, iteration)
            text = await self.breaker.call(self._generate, contents)
        except asyncio.CancelledError:
            raise
        except asyncio.TimeoutError as e:
            raise CriticFailure(
                f"Visual critic timed out after {self.config.critic.timeout_seconds:.0f}s"
            ) from e
        except Exception as e:
            raise CriticFailure(f"Visual critic call failed: {e}") from e

        return parse_critique(text)

    def _build_contents(self, frames: list[SceneFrame], plan: Plan, iteration: int) -> list[Any]:
        parts: list[Any] = [
            types.Part.from_bytes(data=frame.image, mime_type=frame.mime_type) for frame in frames
        ]
        parts.append(build_plan_context(plan, frames, iteration, self.max_iterations))
        return parts

    async def _generate(self, contents: list[Any]) -> str:
        return await asyncio.to_thread(self._generate_sync, contents)

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=2, max=10))
    def _generate_sync(self, contents: list[Any]) -> str:
        response = self.client.models.generate_content(
            model=self.config.models.critic_model,
            contents=contents,
            config=types.GenerateContentConfig(
                system_instruction=CRITIQUE_SYSTEM_PROMPT,
                response_mime_type="application/json",
                temperature=self.config.critic.temperature,
                max_output_tokens=self.config.critic.max_output_tokens,
            ),
        )
        return response.text

