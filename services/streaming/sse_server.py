"""
SSE Server for Refinement Progress Streaming

Starts refinement jobs over HTTP and streams their progress as
Server-Sent Events.

Features:
- One stream per job, any number of clients per job
- Snapshot of the current job state on connect
- History replay after Last-Event-ID (event ids are history indexes)
- Heartbeat comments to keep idle connections alive
- Stream closes after the job completes or fails

Usage:
    server = SSEServer(registry, broadcaster, orchestrator, port=8765)
    await server.start()

    # Start a job
    curl -X POST http://localhost:8765/jobs -d '{"brief": "A CRM for plumbers"}'

    # Follow it
    curl -N http://localhost:8765/stream/{job_id}
"""

import asyncio
import json
import logging
from typing import Any, Optional

from aiohttp import web

from core.exceptions import InvalidPlanError
from services.jobs.models import GLOBAL_TOPIC, ProgressUpdate
from services.jobs.registry import JobRegistry
from services.jobs.sweeper import StaleJobSweeper
from services.refinement.models import ProvidedImage, validate_plan
from services.refinement.orchestrator import RefinementOrchestrator

from .broadcaster import ProgressBroadcaster

logger = logging.getLogger(__name__)

SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


def format_sse(event: str, data: dict[str, Any], event_id: Optional[int] = None) -> bytes:
    lines = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    lines.append(f"event: {event}")
    lines.append(f"data: {json.dumps(data)}")
    return ("\n".join(lines) + "\n\n").encode()


def _parse_last_event_id(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


class SSEServer:
    """
    HTTP front for the refinement orchestrator.

    Endpoints:
        POST   /jobs              start a job ({plan} or {brief})
        GET    /jobs              list jobs
        GET    /jobs/{job_id}     job state, history and result
        DELETE /jobs/{job_id}     cancel a running job
        GET    /stream/{job_id}   SSE progress stream
        GET    /health            health check
    """

    def __init__(
        self,
        registry: JobRegistry,
        broadcaster: ProgressBroadcaster,
        orchestrator: Optional[RefinementOrchestrator] = None,
        sweeper: Optional[StaleJobSweeper] = None,
        host: str = "0.0.0.0",
        port: int = 8765,
        heartbeat_interval: float = 15,
        close_delay: float = 1.0,
        max_iterations_cap: int = 3,
    ):
        self.registry = registry
        self.broadcaster = broadcaster
        self.orchestrator = orchestrator
        self.sweeper = sweeper
        self.host = host
        self.port = port
        self.heartbeat_interval = heartbeat_interval
        self.close_delay = close_delay
        self.max_iterations_cap = max_iterations_cap

        self._running_tasks: dict[str, asyncio.Task] = {}
        self._runner: Optional[web.AppRunner] = None

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/", self._handle_index)
        app.router.add_get("/health", self._handle_health)
        app.router.add_post("/jobs", self._handle_create_job)
        app.router.add_get("/jobs", self._handle_list_jobs)
        app.router.add_get("/jobs/{job_id}", self._handle_get_job)
        app.router.add_delete("/jobs/{job_id}", self._handle_cancel_job)
        app.router.add_get("/stream/{job_id}", self._handle_stream)
        app.on_shutdown.append(self._on_shutdown)
        return app

    async def start(self):
        """Start the SSE server (and the stale-job sweeper, if any)."""
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()

        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()

        if self.sweeper is not None:
            self.sweeper.start()

        logger.info(f"SSE server started at http://{self.host}:{self.port}")

    async def stop(self):
        """Stop the SSE server."""
        if self.sweeper is not None:
            await self.sweeper.stop()

        if self._runner:
            await self._runner.cleanup()
            self._runner = None

        logger.info("SSE server stopped")

    async def _on_shutdown(self, app: web.Application):
        await self.cancel_all()

    async def cancel_all(self):
        """Cancel every running job task."""
        tasks = list(self._running_tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    @property
    def running_jobs(self) -> list[str]:
        return list(self._running_tasks.keys())

    async def _handle_index(self, request: web.Request) -> web.Response:
        """Show usage info."""
        return web.Response(
            text="""
Video Refinery SSE Progress Server

Endpoints:
  POST /jobs                - Start a refinement job
  GET /jobs                 - List jobs
  GET /jobs/{job_id}        - Job state, history and result
  DELETE /jobs/{job_id}     - Cancel a running job
  GET /stream/{job_id}      - SSE stream of job progress
  GET /health               - Health check

Start a job:
  curl -X POST http://localhost:8765/jobs \\
    -H "Content-Type: application/json" \\
    -d '{"brief": "A CRM for plumbers", "maxIterations": 2}'

  Response:
    {"jobId": "job_...", "status": "started", "streamUrl": "/stream/job_..."}

Monitor progress:
  curl -N http://localhost:8765/stream/{job_id}

Events carry the stage name and JSON data:
  {"jobId": "...", "stage": "rendering_frames", "progress": 32.5,
   "message": "Rendering scene 3/6...", "details": {...}, "timestamp": 1700000000000}
            """,
            content_type="text/plain",
        )

    async def _handle_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "healthy",
            "jobs": len(self.registry),
            "running_jobs": len(self._running_tasks),
            "subscribers": self.broadcaster.subscriber_count(),
        })

    async def _handle_create_job(self, request: web.Request) -> web.Response:
        """Validate the request, create the job and run it in the background."""
        if self.orchestrator is None:
            return web.json_response({"error": "Refinement is not configured"}, status=503)

        try:
            data = await request.json()
        except Exception:
            return web.json_response({"error": "Invalid JSON body"}, status=400)
        if not isinstance(data, dict):
            return web.json_response({"error": "Body must be a JSON object"}, status=400)

        try:
            max_iterations = self._requested_iterations(data.get("maxIterations"))
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=400)

        brief = data.get("brief") or data.get("message")
        plan = None
        if data.get("plan") is not None:
            try:
                plan = validate_plan(data["plan"])
            except InvalidPlanError as e:
                return web.json_response(e.to_dict(), status=400)
        elif not brief:
            return web.json_response({"error": "plan or brief is required"}, status=400)

        try:
            provided_images = [ProvidedImage.model_validate(i) for i in data.get("providedImages") or []]
        except ValueError as e:
            return web.json_response({"error": f"Invalid providedImages: {e}"}, status=400)

        if data.get("jobId") == GLOBAL_TOPIC:
            return web.json_response({"error": f"Job id is reserved: {GLOBAL_TOPIC}"}, status=400)

        try:
            job_id = self.registry.create_job(data.get("jobId"))
        except ValueError as e:
            return web.json_response({"error": str(e)}, status=409)

        if plan is not None:
            coro = self.orchestrator.run(job_id, plan, max_iterations=max_iterations)
        else:
            coro = self.orchestrator.run_from_brief(
                job_id,
                brief,
                provided_images=provided_images or None,
                max_iterations=max_iterations,
                enable_refinement=data.get("enableRefinement") is not False,
            )

        task = asyncio.create_task(coro)
        self._running_tasks[job_id] = task
        task.add_done_callback(lambda t: self._running_tasks.pop(job_id, None))

        logger.info(f"Started job {job_id} ({'plan' if plan is not None else 'brief'}, {max_iterations} iterations)")

        return web.json_response({
            "jobId": job_id,
            "status": "started",
            "streamUrl": f"/stream/{job_id}",
        })

    def _requested_iterations(self, value: Any) -> int:
        default = min(self.orchestrator.config.refinement.max_iterations, self.max_iterations_cap)
        if value is None:
            return default
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError("maxIterations must be an integer")
        if value < 1:
            raise ValueError("maxIterations must be at least 1")
        return min(value, self.max_iterations_cap)

    async def _handle_list_jobs(self, request: web.Request) -> web.Response:
        return web.json_response({
            "jobs": [job.to_dict(include_history=False) for job in self.registry.list_jobs()],
        })

    async def _handle_get_job(self, request: web.Request) -> web.Response:
        job_id = request.match_info["job_id"]
        job = self.registry.get_job(job_id)
        if job is None:
            return web.json_response({"error": f"Job not found: {job_id}"}, status=404)
        return web.json_response(job.to_dict())

    async def _handle_cancel_job(self, request: web.Request) -> web.Response:
        job_id = request.match_info["job_id"]
        task = self._running_tasks.get(job_id)
        if task is None:
            status = 404 if job_id not in self.registry else 409
            return web.json_response({"error": f"Job is not running: {job_id}"}, status=status)

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

        job = self.registry.get_job(job_id)
        if job is not None and not job.is_terminal:
            # Cancelled before the run got going
            self.registry.fail_job(job_id, "cancelled")
        return web.json_response({"jobId": job_id, "status": "cancelled"})

    async def _handle_stream(self, request: web.Request) -> web.StreamResponse:
        """Stream a job's progress from the join point forward."""
        job_id = request.match_info["job_id"]
        job = self.registry.get_job(job_id)
        if job is None:
            return web.json_response({"error": f"Job not found: {job_id}"}, status=404)

        last_event_id = _parse_last_event_id(request.headers.get("Last-Event-ID"))

        # Subscribe before reading history so nothing falls in between
        subscription = self.broadcaster.subscribe(job_id)
        history = list(job.history)
        seen = {id(update) for update in history}
        next_id = len(history)

        response = web.StreamResponse(status=200, reason="OK", headers=SSE_HEADERS)
        await response.prepare(request)

        logger.info(f"Client connected to stream {job_id}")

        try:
            if last_event_id is not None:
                for index in range(last_event_id + 1, len(history)):
                    await response.write(history[index].to_sse(event_id=str(index)).encode())
                if len(history) > last_event_id + 1:
                    logger.debug(f"Replayed {len(history) - last_event_id - 1} events for {job_id}")
            else:
                await response.write(
                    format_sse("snapshot", job.snapshot(), event_id=next_id - 1 if history else None)
                )

            if history and history[-1].stage.is_terminal:
                return response

            while True:
                try:
                    update: Optional[ProgressUpdate] = await subscription.get(timeout=self.heartbeat_interval)
                except asyncio.TimeoutError:
                    await response.write(b": heartbeat\n\n")
                    continue

                if update is None:
                    # Job was swept
                    break
                if id(update) in seen:
                    continue

                await response.write(update.to_sse(event_id=str(next_id)).encode())
                next_id += 1

                if update.stage.is_terminal:
                    await asyncio.sleep(self.close_delay)
                    break

        except (ConnectionResetError, asyncio.CancelledError):
            pass
        finally:
            subscription.close()
            logger.info(f"Client disconnected from stream {job_id}")

        return response
