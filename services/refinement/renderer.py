"""
Frame Renderer

Produces one representative still per scene for the visual critic.

The renderer is an external collaborator: anything with an async
render_frames(plan, on_frame=None) method works, and plain callables
taking a plan are wrapped by CallableRenderer.

RemotionFrameRenderer is the shipped adapter. It asks a Remotion still
service for one frame per scene, 40% into the scene (after the entrance
animation).
"""

import asyncio
import base64
import inspect
import logging
from typing import Awaitable, Callable, Optional, Protocol, Union, runtime_checkable

import aiohttp
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.circuit_breaker import CircuitBreaker, CircuitBreakerOpen, get_collaborator_breaker
from core.config import RendererConfig
from core.exceptions import RenderFailure

from .models import SCENE_ORDER, Plan, SceneFrame

logger = logging.getLogger(__name__)

FrameCallback = Callable[[int, int], None]

# Scene lengths in frames at 30fps
SCENE_DURATIONS: dict[str, dict[str, int]] = {
    "short": {"hook": 60, "problem": 75, "solution": 75, "demo": 75, "proof": 60, "cta": 45},
    "standard": {"hook": 75, "problem": 90, "solution": 90, "demo": 90, "proof": 75, "cta": 60},
    "long": {"hook": 90, "problem": 105, "solution": 105, "demo": 105, "proof": 90, "cta": 75},
}


@runtime_checkable
class FrameRenderer(Protocol):
    async def render_frames(
        self,
        plan: Plan,
        on_frame: Optional[FrameCallback] = None,
    ) -> list[SceneFrame]:
        ...


def capture_points(plan: Plan, fps: int = 30, capture_point: float = 0.4) -> list[tuple[str, int]]:
    """(scene, frame number) for each scene of the plan, in story order."""
    durations = SCENE_DURATIONS[plan.settings.duration]
    points = []
    start = 0
    for scene in SCENE_ORDER:
        length = durations[scene]
        points.append((scene, start + int(length * capture_point)))
        start += length
    return points


class CallableRenderer:
    """Adapts a plain function (sync or async) taking a plan into a FrameRenderer."""

    def __init__(self, func: Callable[[Plan], Union[list[SceneFrame], Awaitable[list[SceneFrame]]]]):
        self.func = func

    async def render_frames(
        self,
        plan: Plan,
        on_frame: Optional[FrameCallback] = None,
    ) -> list[SceneFrame]:
        frames = self.func(plan)
        if inspect.isawaitable(frames):
            frames = await frames
        frames = list(frames)
        if on_frame is not None and frames:
            on_frame(len(frames), len(frames))
        return frames


def as_renderer(renderer) -> FrameRenderer:
    """Accept a FrameRenderer or a plain callable."""
    if hasattr(renderer, "render_frames"):
        return renderer
    if callable(renderer):
        return CallableRenderer(renderer)
    raise TypeError(f"Not a frame renderer: {renderer!r}")


class _RetryableRenderError(Exception):
    pass


class RemotionFrameRenderer:
    """
    Renders scene stills through a Remotion still service.

    POST {api_url}/still
        {"composition": ..., "frame": n, "imageFormat": "png", "inputProps": {"plan": ...}}

    The service answers with the PNG body, or JSON {"image": "<base64>"}.

    Usage:
        renderer = RemotionFrameRenderer()
        frames = await renderer.render_frames(plan)
        await renderer.close()
    """

    def __init__(
        self,
        config: Optional[RendererConfig] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.config = config or RendererConfig()
        self.api_url = self.config.api_url.rstrip("/")
        self.breaker = breaker or get_collaborator_breaker("renderer", timeout=self.config.timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            headers = {}
            if self.config.api_key:
                headers["Authorization"] = f"Bearer {self.config.api_key}"
            self._session = aiohttp.ClientSession(headers=headers)
        return self._session

    async def close(self):
        """Close the client session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def render_frames(
        self,
        plan: Plan,
        on_frame: Optional[FrameCallback] = None,
    ) -> list[SceneFrame]:
        """
        Render one still per scene.

        Raises:
            RenderFailure: If any still cannot be rendered
        """
        points = capture_points(plan, self.config.fps, self.config.capture_point)
        plan_data = plan.to_dict()
        frames: list[SceneFrame] = []

        logger.info(f"Capturing {len(points)} frames for plan {plan.id}")

        for index, (scene, frame) in enumerate(points, start=1):
            logger.debug(f"Capturing {scene} at frame {frame}")
            try:
                image = await self.breaker.call(self._render_still, plan_data, frame)
            except CircuitBreakerOpen as e:
                raise RenderFailure(f"Renderer unavailable: {e}") from e
            except asyncio.TimeoutError as e:
                raise RenderFailure(
                    f"Rendering {scene} timed out after {self.config.timeout_seconds:.0f}s"
                ) from e
            except RenderFailure:
                raise
            except (aiohttp.ClientError, _RetryableRenderError) as e:
                raise RenderFailure(f"Failed to render {scene} frame: {e}") from e

            frames.append(SceneFrame(scene=scene, image=image, timestamp=frame / self.config.fps))
            if on_frame is not None:
                on_frame(index, len(points))

        logger.info(f"Captured {len(frames)} frames")
        return frames

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=retry_if_exception_type((aiohttp.ClientConnectionError, _RetryableRenderError)),
        reraise=True,
    )
    async def _render_still(self, plan_data: dict, frame: int) -> bytes:
        session = await self._get_session()
        payload = {
            "composition": self.config.composition,
            "frame": frame,
            "imageFormat": "png",
            "inputProps": {"plan": plan_data},
        }

        async with session.post(f"{self.api_url}/still", json=payload) as resp:
            if resp.status >= 500:
                raise _RetryableRenderError(f"HTTP {resp.status}: {await resp.text()}")
            if resp.status != 200:
                raise RenderFailure(f"Still render rejected (HTTP {resp.status}): {await resp.text()}")

            if resp.content_type == "application/json":
                data = await resp.json()
                image = data.get("image")
                if not image:
                    raise RenderFailure("Still render response has no image")
                return base64.b64decode(image)

            return await resp.read()
