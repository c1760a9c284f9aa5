"""
Refinement Models

The video plan under refinement and the critique / correction types
exchanged with the visual critic.

JSON uses the camelCase keys of the renderer contract (templateId,
accentColor, buttonText, overallScore, ...); Python attributes are
snake_case. Dump with model_dump(by_alias=True) for the wire.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from core.exceptions import InvalidPlanError

logger = logging.getLogger(__name__)

TEMPLATE_ID = "BASE44_PREMIUM"

SceneName = Literal["hook", "problem", "solution", "demo", "proof", "cta"]
SCENE_ORDER: tuple[str, ...] = ("hook", "problem", "solution", "demo", "proof", "cta")

Intensity = Literal["low", "medium", "high"]
Duration = Literal["short", "standard", "long"]
ImageRole = Literal["logo", "heroScreenshot", "extraScreen1", "extraScreen2", "proofImage"]
Severity = Literal["minor", "major", "critical"]

ACCEPTANCE_SCORE = 8
FALLBACK_SCORE = 7


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


# ============================================================
# Plan
# ============================================================

class Brand(_WireModel):
    """Product identity"""
    name: str = Field(min_length=1, description="Product/company name")
    tagline: Optional[str] = None
    accent_color: str = Field("#6366F1", alias="accentColor", description="Primary brand color (hex)")
    logo_image_id: Optional[str] = Field(None, alias="logoImageId")


class HookScene(_WireModel):
    headline: str = Field(min_length=1, description="Bold attention-grabbing statement")
    subtext: Optional[str] = None


class ProblemScene(_WireModel):
    headline: str = Field(min_length=1, description="Pain point / tension")
    subtext: Optional[str] = None
    bullets: Optional[list[str]] = Field(None, description="Up to 3 bullet points")


class SolutionScene(_WireModel):
    headline: str = Field(min_length=1, description="Product introduction")
    subtext: Optional[str] = None


class DemoScene(_WireModel):
    headline: str = Field(min_length=1, description="Feature highlight")
    subtext: Optional[str] = None
    feature_points: Optional[list[str]] = Field(None, alias="featurePoints")


class ProofScene(_WireModel):
    stat: Optional[str] = Field(None, description='e.g. "10,000+"')
    headline: str = Field(min_length=1)
    subtext: Optional[str] = None


class CtaScene(_WireModel):
    headline: str = Field(min_length=1)
    button_text: str = Field(min_length=1, alias="buttonText")
    subtext: Optional[str] = None


class Story(_WireModel):
    """The fixed six-scene structure"""
    hook: HookScene
    problem: ProblemScene
    solution: SolutionScene
    demo: DemoScene
    proof: ProofScene
    cta: CtaScene


class ImageCast(_WireModel):
    image_id: str = Field(alias="imageId")
    role: ImageRole
    detected_type: Optional[Literal["logo", "screenshot", "photo", "graphic"]] = Field(
        None, alias="detectedType"
    )


class Casting(_WireModel):
    images: list[ImageCast] = Field(default_factory=list)


class VisualStyle(_WireModel):
    preset: str = "modern"


class Settings(_WireModel):
    intensity: Intensity = "medium"
    palette: str = Field("midnight", description="midnight | sunrise | ocean | forest | neon | clean | auto")
    include_grain: bool = Field(True, alias="includeGrain")
    duration: Duration = "standard"
    visual_style: Optional[VisualStyle] = Field(default_factory=VisualStyle, alias="visualStyle")


class ProvidedImage(_WireModel):
    id: str
    url: str
    intent: Optional[str] = None
    description: Optional[str] = None


class Plan(_WireModel):
    """
    A complete video plan.

    Treated as an immutable value: refinement produces new plans with
    model_copy / model_validate, never edits one in place.
    """
    template_id: Literal["BASE44_PREMIUM"] = Field(TEMPLATE_ID, alias="templateId")
    id: str = Field(default_factory=lambda: f"plan_{int(time.time() * 1000)}")
    created_at: str = Field(
        default_factory=lambda: datetime.now(timezone.utc).isoformat(),
        alias="createdAt",
    )
    brand: Brand
    story: Story
    casting: Casting = Field(default_factory=Casting)
    settings: Settings = Field(default_factory=Settings)
    provided_images: Optional[list[ProvidedImage]] = Field(None, alias="providedImages")

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


def validate_plan(data: Any) -> Plan:
    """
    Validate a plan from a dict, JSON string or Plan.

    Raises:
        InvalidPlanError: If the data is not a valid plan
    """
    if isinstance(data, Plan):
        return data
    try:
        if isinstance(data, (str, bytes)):
            return Plan.model_validate_json(data)
        return Plan.model_validate(data)
    except ValidationError as e:
        raise InvalidPlanError(
            f"Invalid plan: {e.error_count()} validation error(s)",
            details={"errors": e.errors(include_url=False, include_input=False, include_context=False)},
        ) from e


# ============================================================
# Frames
# ============================================================

@dataclass
class SceneFrame:
    """One representative still captured for one scene."""
    scene: str
    image: bytes
    timestamp: float  # seconds
    mime_type: str = "image/png"

    def __post_init__(self):
        if self.scene not in SCENE_ORDER:
            raise ValueError(f"Unknown scene: {self.scene}")


# ============================================================
# Critique
# ============================================================

class SceneIssue(_WireModel):
    scene: str
    issues: list[str] = Field(default_factory=list)
    suggestions: list[str] = Field(default_factory=list)
    severity: Severity = "minor"


class TextChange(_WireModel):
    """Replace one text field of one scene."""
    scene: str
    field: str = Field(description="headline | subtext | buttonText | stat")
    reason: str = ""
    suggested_change: Optional[str] = Field(None, alias="suggestedChange")


class VisualChange(_WireModel):
    """Advisory only; never applied to the plan."""
    type: str = Field(description="fontSize | color | spacing | layout | timing")
    scene: Optional[str] = None
    reason: str = ""
    suggestion: str = ""


class StyleChange(_WireModel):
    field: str = Field(description="palette | preset | intensity")
    current_value: Optional[str] = Field(None, alias="currentValue")
    suggested_value: Optional[str] = Field(None, alias="suggestedValue")
    reason: str = ""


class Corrections(_WireModel):
    text_changes: list[TextChange] = Field(default_factory=list, alias="textChanges")
    visual_changes: list[VisualChange] = Field(default_factory=list, alias="visualChanges")
    style_changes: list[StyleChange] = Field(default_factory=list, alias="styleChanges")

    @model_validator(mode="before")
    @classmethod
    def _null_lists(cls, data: Any) -> Any:
        # Critics send null for "no changes of this kind"
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data

    def is_empty(self) -> bool:
        return not (self.text_changes or self.visual_changes or self.style_changes)


class Critique(_WireModel):
    """Structured assessment of one set of rendered frames."""
    overall_score: float = Field(ge=1, le=10, alias="overallScore")
    is_acceptable: bool = Field(alias="isAcceptable")
    scene_issues: list[SceneIssue] = Field(default_factory=list, alias="sceneIssues")
    global_issues: list[str] = Field(default_factory=list, alias="globalIssues")
    corrections: Corrections = Field(default_factory=Corrections)
    is_fallback: bool = Field(False, alias="isFallback")

    @model_validator(mode="before")
    @classmethod
    def _null_fields(cls, data: Any) -> Any:
        if isinstance(data, dict):
            return {k: v for k, v in data.items() if v is not None}
        return data

    @model_validator(mode="after")
    def _acceptance_needs_score(self) -> "Critique":
        if self.is_acceptable and self.overall_score < ACCEPTANCE_SCORE and not self.is_fallback:
            logger.warning(
                f"Critique marked acceptable with score {self.overall_score:g}; "
                f"treating as not acceptable"
            )
            self.is_acceptable = False
        return self

    @property
    def accepted(self) -> bool:
        """Whether this critique ends refinement."""
        return self.is_acceptable and self.overall_score >= ACCEPTANCE_SCORE

    @classmethod
    def fallback(cls, reason: str = "Analysis failed - using original plan") -> "Critique":
        """Conservative critique used when the critic cannot evaluate."""
        return cls(
            overall_score=FALLBACK_SCORE,
            is_acceptable=True,
            global_issues=[reason],
            is_fallback=True,
        )

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)


# ============================================================
# Result
# ============================================================

@dataclass
class RefinementResult:
    """Outcome of a refinement loop."""
    final_plan: Plan
    iterations: int
    final_score: Optional[float]
    all_critiques: list[Critique] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "finalPlan": self.final_plan.to_dict(),
            "iterations": self.iterations,
            "finalScore": self.final_score,
            "allCritiques": [c.to_dict() for c in self.all_critiques],
        }
