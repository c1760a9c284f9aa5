"""
Correction Applier

Turns a critique's corrections into a new plan. Pure: the input plan is
never touched and the same inputs always give the same output.

- style changes: palette, intensity, preset (settings.visualStyle.preset)
- text changes: overwrite an existing text field of an existing scene
- visual changes: advisory for the template, logged and never applied

Unknown fields, invalid values and edits that would break plan
validation are skipped.
"""

import copy
import logging
from typing import Any, get_args

from pydantic import ValidationError

from .models import Corrections, Intensity, Plan, StyleChange, TextChange

logger = logging.getLogger(__name__)

TEXT_FIELDS = {"headline", "subtext", "buttonText", "stat"}
INTENSITIES = set(get_args(Intensity))


def apply_corrections(plan: Plan, corrections: Corrections) -> Plan:
    """
    Apply corrections to a copy of the plan.

    Args:
        plan: Current plan (unchanged by this call)
        corrections: Corrections from a critique

    Returns:
        A new, valid Plan
    """
    data = plan.model_dump(by_alias=True)

    for change in corrections.style_changes:
        _try_edit(data, change, _apply_style_change)

    for change in corrections.text_changes:
        _try_edit(data, change, _apply_text_change)

    for change in corrections.visual_changes:
        where = f" ({change.scene})" if change.scene else ""
        logger.info(f"Visual change suggested{where}, not applied: {change.type}: {change.suggestion}")

    return Plan.model_validate(data)


def _try_edit(data: dict[str, Any], change, apply) -> None:
    """Apply one edit in place on data if the result still validates."""
    candidate = copy.deepcopy(data)
    if not apply(candidate, change):
        return
    try:
        Plan.model_validate(candidate)
    except ValidationError as e:
        logger.warning(f"Skipping correction that would invalidate the plan: {change!r} ({e.error_count()} errors)")
        return
    data.clear()
    data.update(candidate)


def _apply_style_change(data: dict[str, Any], change: StyleChange) -> bool:
    value = change.suggested_value
    if not value:
        return False

    settings = data["settings"]
    if change.field == "palette":
        settings["palette"] = value
        return True
    if change.field == "intensity":
        if value not in INTENSITIES:
            logger.warning(f"Ignoring invalid intensity: {value}")
            return False
        settings["intensity"] = value
        return True
    if change.field == "preset":
        if not settings.get("visualStyle"):
            return False
        settings["visualStyle"]["preset"] = value
        return True

    logger.debug(f"Ignoring unknown style field: {change.field}")
    return False


def _apply_text_change(data: dict[str, Any], change: TextChange) -> bool:
    if not change.suggested_change:
        return False

    scene = data["story"].get(change.scene)
    if scene is None or change.field not in TEXT_FIELDS:
        return False
    if scene.get(change.field) is None:
        return False

    scene[change.field] = change.suggested_change
    return True
