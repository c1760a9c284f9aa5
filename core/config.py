"""
Configuration management for the refinery.

Centralizes all configuration including:
- API keys and model selections
- Renderer and critic endpoints/deadlines
- Refinement loop limits
- Job retention and SSE server settings
"""

import os
from dataclasses import dataclass, field
from typing import Optional


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except ValueError:
        return default


@dataclass
class APIConfig:
    """API keys for the generative collaborators."""
    google_api_key: str = field(default_factory=lambda: os.getenv("GOOGLE_API_KEY", ""))


@dataclass
class ModelConfig:
    """Model selection configuration."""
    plan_model: str = field(default_factory=lambda: os.getenv("PLAN_MODEL", "gemini-2.0-flash"))
    critic_model: str = field(default_factory=lambda: os.getenv("CRITIC_MODEL", "gemini-2.0-flash"))


@dataclass
class RendererConfig:
    """Remotion still-render service."""
    api_url: str = field(default_factory=lambda: os.getenv("REMOTION_API_URL", "http://localhost:3001"))
    api_key: str = field(default_factory=lambda: os.getenv("REMOTION_API_KEY", ""))
    composition: str = field(default_factory=lambda: os.getenv("REMOTION_COMPOSITION", "Base44PremiumTemplate"))
    fps: int = 30
    capture_point: float = 0.4  # Fraction into each scene (after entrance animation)
    timeout_seconds: float = field(default_factory=lambda: _env_float("RENDER_TIMEOUT_SECONDS", 120.0))


@dataclass
class CriticConfig:
    """Visual critic behavior."""
    timeout_seconds: float = field(default_factory=lambda: _env_float("CRITIC_TIMEOUT_SECONDS", 60.0))
    acceptance_score: int = 8
    fallback_score: int = 7
    max_output_tokens: int = 2048
    temperature: float = 0.3


@dataclass
class RefinementConfig:
    """Render → critique → correct loop limits."""
    max_iterations: int = field(default_factory=lambda: _env_int("MAX_REFINEMENT_ITERATIONS", 3))
    max_iterations_cap: int = 3  # Upper bound for externally requested runs
    render_timeout_seconds: Optional[float] = field(
        default_factory=lambda: _env_float("RENDER_DEADLINE_SECONDS", 300.0)
    )
    critique_timeout_seconds: Optional[float] = field(
        default_factory=lambda: _env_float("CRITIQUE_DEADLINE_SECONDS", 120.0)
    )


@dataclass
class JobConfig:
    """Job retention."""
    max_age_seconds: float = field(default_factory=lambda: _env_float("JOB_MAX_AGE_SECONDS", 30 * 60))
    sweep_interval_seconds: float = field(default_factory=lambda: _env_float("JOB_SWEEP_INTERVAL_SECONDS", 60))


@dataclass
class ServerConfig:
    """SSE progress server."""
    host: str = field(default_factory=lambda: os.getenv("SSE_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: _env_int("SSE_PORT", 8765))
    heartbeat_seconds: float = field(default_factory=lambda: _env_float("SSE_HEARTBEAT_SECONDS", 15))
    close_delay_seconds: float = 1.0  # Give clients time to read the final event


@dataclass
class Config:
    """Main configuration class."""

    api: APIConfig = field(default_factory=APIConfig)
    models: ModelConfig = field(default_factory=ModelConfig)
    renderer: RendererConfig = field(default_factory=RendererConfig)
    critic: CriticConfig = field(default_factory=CriticConfig)
    refinement: RefinementConfig = field(default_factory=RefinementConfig)
    jobs: JobConfig = field(default_factory=JobConfig)
    server: ServerConfig = field(default_factory=ServerConfig)

    @classmethod
    def from_env(cls) -> "Config":
        """Load configuration from environment variables."""
        return cls()

    def validate(self) -> list[str]:
        """Validate configuration and return list of issues."""
        issues = []

        if not self.api.google_api_key:
            issues.append("GOOGLE_API_KEY not configured (needed for plan generation and critique)")

        if not self.renderer.api_url:
            issues.append("REMOTION_API_URL not configured")

        if self.refinement.max_iterations < 1:
            issues.append("MAX_REFINEMENT_ITERATIONS must be at least 1")

        return issues


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config.from_env()
    return _config


def reload_config():
    """Reload configuration from environment."""
    global _config
    _config = Config.from_env()
