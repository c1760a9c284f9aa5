"""
Plan Generator

Drafts the initial video plan from a product brief with Gemini.

The model fills the brand, the six-scene story and the settings; ids,
timestamps, the template id and image casting are always set here.
"""

import asyncio
import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, Optional

from google import genai
from google.genai import types
from tenacity import retry, stop_after_attempt, wait_exponential

from core.circuit_breaker import CircuitBreaker, get_collaborator_breaker
from core.config import Config, get_config
from core.exceptions import InvalidPlanError, PlanGenerationError

from .critic import strip_code_fences
from .models import TEMPLATE_ID, ImageCast, Plan, ProvidedImage, validate_plan

logger = logging.getLogger(__name__)

PLAN_SYSTEM_PROMPT = """You are the creative director of a high-end video marketing agency.
Generate a marketing video plan in JSON for the BASE44_PREMIUM template.

Required structure:
{
  "templateId": "BASE44_PREMIUM",
  "brand": { "name": "...", "accentColor": "#..." },
  "story": {
    "hook": { "headline": "...", "subtext": "..." },
    "problem": { "headline": "...", "subtext": "...", "bullets": ["..."] },
    "solution": { "headline": "...", "subtext": "..." },
    "demo": { "headline": "...", "featurePoints": ["..."] },
    "proof": { "stat": "...", "headline": "...", "subtext": "..." },
    "cta": { "headline": "...", "buttonText": "...", "subtext": "..." }
  },
  "settings": {
    "intensity": "medium",
    "palette": "midnight",
    "includeGrain": true,
    "duration": "standard",
    "visualStyle": { "preset": "modern" }
  }
}

Rules:
- Headlines: 6-8 words max, punchy
- Write in the language of the brief
- Output JSON only
"""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def default_plan(product_name: str = "Your Product") -> Plan:
    """The stock plan used when no brief is available."""
    return Plan.model_validate({
        "templateId": TEMPLATE_ID,
        "id": f"plan_{int(time.time() * 1000)}",
        "createdAt": _now_iso(),
        "brand": {"name": product_name, "accentColor": "#6366F1"},
        "story": {
            "hook": {
                "headline": "Stop Wasting Time",
                "subtext": "on manual work that should be automated",
            },
            "problem": {
                "headline": "Hours Lost Every Week",
                "subtext": "to repetitive tasks and inefficient workflows",
                "bullets": ["Manual data entry", "Scattered information", "Missed deadlines"],
            },
            "solution": {
                "headline": f"Introducing {product_name}",
                "subtext": "The smarter way to work",
            },
            "demo": {
                "headline": "See It In Action",
                "subtext": "Powerful yet incredibly simple",
                "featurePoints": ["Automate workflows", "Real-time sync", "Smart insights"],
            },
            "proof": {"stat": "10,000+", "headline": "Teams Trust Us", "subtext": "and counting"},
            "cta": {
                "headline": "Start Free Today",
                "buttonText": "Get Started",
                "subtext": "No credit card required",
            },
        },
        "casting": {"images": []},
        "settings": {
            "intensity": "medium",
            "palette": "midnight",
            "includeGrain": True,
            "duration": "standard",
        },
    })


def cast_images_to_roles(images: list[ProvidedImage]) -> list[ImageCast]:
    """
    Assign a template role to each provided image.

    Logos are detected by intent or id, proof images by intent; the first
    remaining image is the hero screenshot, the next ones extra screens.
    """
    casts: list[ImageCast] = []

    for image in images:
        intent = (image.intent or image.description or "").lower()
        image_id = image.id.lower()
        roles = {cast.role for cast in casts}

        if "logo" in intent or "logo" in image_id:
            role, detected = "logo", "logo"
        elif "proof" in intent or "testimonial" in intent:
            role, detected = "proofImage", "photo"
        elif "heroScreenshot" not in roles:
            role, detected = "heroScreenshot", "screenshot"
        elif "extraScreen1" not in roles:
            role, detected = "extraScreen1", "screenshot"
        else:
            role, detected = "extraScreen2", "screenshot"

        casts.append(ImageCast(image_id=image.id, role=role, detected_type=detected))

    return casts


def assemble_plan(raw: dict[str, Any], provided_images: Optional[list[ProvidedImage]] = None) -> Plan:
    """
    Build a validated plan from model output.

    Raises:
        InvalidPlanError: If the story is missing or incomplete
    """
    settings = raw.get("settings") or {}
    data = {
        "templateId": TEMPLATE_ID,
        "id": f"plan_{int(time.time() * 1000)}",
        "createdAt": _now_iso(),
        "brand": raw.get("brand") or {"name": "Product", "accentColor": "#6366F1"},
        "story": raw.get("story"),
        "casting": {
            "images": [
                cast.model_dump(by_alias=True) for cast in cast_images_to_roles(provided_images or [])
            ],
        },
        "settings": {
            "intensity": settings.get("intensity") or "medium",
            "palette": settings.get("palette") or "midnight",
            "includeGrain": True,
            "duration": settings.get("duration") or "standard",
            "visualStyle": settings.get("visualStyle") or {"preset": "modern"},
        },
    }
    if provided_images:
        data["providedImages"] = [image.model_dump(by_alias=True) for image in provided_images]
    return validate_plan(data)


class PlanGenerator:
    """
    Drafts plans with Gemini.

    Usage:
        planner = PlanGenerator()
        plan = await planner.generate("A CRM for plumbers")
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        client: Optional[genai.Client] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.config = config or get_config()
        self._client = client
        self.breaker = breaker or get_collaborator_breaker("planner")

    @property
    def client(self) -> genai.Client:
        if self._client is None:
            self._client = genai.Client(api_key=self.config.api.google_api_key or None)
        return self._client

    async def generate(
        self,
        brief: str,
        provided_images: Optional[list[ProvidedImage]] = None,
    ) -> Plan:
        """
        Draft a plan for a brief.

        Raises:
            PlanGenerationError: If the model fails or returns an invalid plan
        """
        if not brief or not brief.strip():
            raise PlanGenerationError("Brief is empty")

        prompt = f"Create a marketing video for:\n\n{brief}\n\n"
        if provided_images:
            intents = ", ".join(image.intent or "image" for image in provided_images)
            prompt += f"Provided images: {intents}\n"
        prompt += "Output JSON only."

        try:
            text = await self.breaker.call(asyncio.to_thread, self._generate_sync, prompt)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise PlanGenerationError(f"Plan generation failed: {e}") from e

        try:
            raw = json.loads(strip_code_fences(text or ""))
        except json.JSONDecodeError as e:
            raise PlanGenerationError(f"Plan generator returned invalid JSON: {e}") from e
        if not isinstance(raw, dict):
            raise PlanGenerationError("Plan generator returned a non-object")

        try:
            plan = assemble_plan(raw, provided_images)
        except InvalidPlanError as e:
            raise PlanGenerationError(e.message, details=e.details) from e

        logger.info(f"Initial plan generated: {plan.id}")
        return plan

    @retry(stop=stop_after_attempt(3), wait=wait_exponential(multiplier=1, min=2, max=10))
    def _generate_sync(self, prompt: str) -> str:
        response = self.client.models.generate_content(
            model=self.config.models.plan_model,
            contents=prompt,
            config=types.GenerateContentConfig(
                system_instruction=PLAN_SYSTEM_PROMPT,
                response_mime_type="application/json",
                temperature=0.7,
                max_output_tokens=2048,
            ),
        )
        return response.text
