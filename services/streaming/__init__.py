"""
SSE Progress Streaming

Real-time visibility into refinement jobs. The registry publishes every
progress update to a ProgressBroadcaster; the SSE server (or any
in-process observer) subscribes to it.

Usage:
    broadcaster = ProgressBroadcaster()
    registry = JobRegistry(broadcaster)
    server = SSEServer(registry, broadcaster, orchestrator, port=8765)
    await server.start()

    curl -N http://localhost:8765/stream/job_1700000000000_abc123xyz
"""

from .broadcaster import GLOBAL_TOPIC, ProgressBroadcaster, Subscription
from .sse_server import SSEServer, format_sse

__all__ = [
    "GLOBAL_TOPIC",
    "ProgressBroadcaster",
    "SSEServer",
    "Subscription",
    "format_sse",
]
