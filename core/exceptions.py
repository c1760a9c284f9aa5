"""
Refinery Exceptions

Error hierarchy for the refinement pipeline.

Fatal for a job:
- RenderFailure: the frame renderer failed
- CollaboratorTimeout: a render/critique call exceeded its deadline
- PlanGenerationError: the initial plan could not be drafted

Absorbed by the critic adapter (fallback critique):
- CriticFailure
- CriticMalformedResponse
"""

from typing import Any, Optional


class RefineryError(Exception):
    """Base exception for all refinement pipeline errors."""

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        recoverable: bool = False,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        self.recoverable = recoverable

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for serialization."""
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
        }


class InvalidPlanError(RefineryError):
    """A plan failed schema validation."""


class RenderFailure(RefineryError):
    """
    The frame renderer failed.

    Carries the critiques gathered before the failure so they can be
    kept for audit on the failed job.
    """

    def __init__(
        self,
        message: str,
        iteration: Optional[int] = None,
        critiques: Optional[list] = None,
        **kwargs,
    ):
        details = kwargs.pop("details", {})
        if iteration is not None:
            details["iteration"] = iteration
        super().__init__(message, details=details, **kwargs)
        self.iteration = iteration
        self.critiques = list(critiques or [])


class CollaboratorTimeout(RenderFailure):
    """A collaborator call exceeded the caller-supplied deadline."""

    def __init__(
        self,
        collaborator: str,
        timeout_seconds: float,
        **kwargs,
    ):
        super().__init__(
            f"{collaborator} call exceeded {timeout_seconds:.1f}s deadline",
            **kwargs,
        )
        self.collaborator = collaborator
        self.timeout_seconds = timeout_seconds
        self.details["collaborator"] = collaborator
        self.details["timeout_seconds"] = timeout_seconds


class CriticFailure(RefineryError):
    """The visual critic could not be reached or raised."""

    def __init__(self, message: str, **kwargs):
        super().__init__(message, recoverable=True, **kwargs)


class CriticMalformedResponse(CriticFailure):
    """The visual critic answered with content that is not a valid critique."""

    def __init__(self, message: str, raw_response: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", {})
        if raw_response:
            # Truncate large responses
            details["raw_response"] = raw_response[:500]
        super().__init__(message, details=details, **kwargs)


class PlanGenerationError(RefineryError):
    """The plan generator failed or produced an invalid plan."""
