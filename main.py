#!/usr/bin/env python3
"""
Video Refinery - Main Entry Point

Drafts video plans and refines them through render → critique → correct
cycles, with SSE progress streaming.

Usage:
    # Start server mode (SSE + job API)
    python main.py server

    # Refine a single plan in-process
    python main.py refine --plan plan.json
    python main.py refine --brief "A CRM for plumbers"

    # Check configuration
    python main.py validate-config
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("refinery")


def build_services(config):
    """Wire registry, broadcaster and orchestrator from configuration."""
    from services.jobs import JobRegistry
    from services.refinement import (
        GeminiVisualCritic,
        PlanGenerator,
        RefinementOrchestrator,
        RemotionFrameRenderer,
    )
    from services.streaming import ProgressBroadcaster

    broadcaster = ProgressBroadcaster()
    registry = JobRegistry(broadcaster)
    renderer = RemotionFrameRenderer(config.renderer)
    orchestrator = RefinementOrchestrator(
        registry,
        critic=GeminiVisualCritic(config, max_iterations=config.refinement.max_iterations),
        renderer=renderer,
        planner=PlanGenerator(config),
        config=config,
    )
    return broadcaster, registry, renderer, orchestrator


async def start_server(host: Optional[str] = None, port: Optional[int] = None):
    """Start the SSE server and the stale-job sweeper."""
    from core.config import get_config
    from services.jobs import StaleJobSweeper
    from services.streaming import SSEServer

    config = get_config()
    host = host or config.server.host
    port = port or config.server.port

    broadcaster, registry, renderer, orchestrator = build_services(config)
    sweeper = StaleJobSweeper(
        registry,
        interval_seconds=config.jobs.sweep_interval_seconds,
        max_age_ms=config.jobs.max_age_seconds * 1000,
    )
    server = SSEServer(
        registry,
        broadcaster,
        orchestrator,
        sweeper=sweeper,
        host=host,
        port=port,
        heartbeat_interval=config.server.heartbeat_seconds,
        close_delay=config.server.close_delay_seconds,
        max_iterations_cap=config.refinement.max_iterations_cap,
    )
    await server.start()

    logger.info(f"Video Refinery server running at http://{host}:{port}")
    logger.info("Press Ctrl+C to stop")

    # Keep running until interrupted
    stop_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, stop_event.set)

    await stop_event.wait()
    await server.stop()
    await renderer.close()

    logger.info("Server stopped")


async def refine(
    plan_path: Optional[str] = None,
    brief: Optional[str] = None,
    max_iterations: Optional[int] = None,
    output: Optional[str] = None,
) -> bool:
    """
    Run one refinement job in-process.

    Args:
        plan_path: JSON plan file to refine
        brief: Product brief to draft a plan from (when no plan is given)
        max_iterations: Render/critique cycles allowed
        output: File to write the result JSON to (stdout if omitted)

    Returns:
        True if the job completed
    """
    from core.config import get_config
    from core.exceptions import InvalidPlanError
    from services.refinement import validate_plan

    config = get_config()
    broadcaster, registry, renderer, orchestrator = build_services(config)

    def log_progress(update):
        logger.info(f"[{update.stage.value}] {update.progress:5.1f}% {update.message}")

    job_id = registry.create_job()
    broadcaster.subscribe_callback(job_id, log_progress)

    try:
        if plan_path:
            try:
                plan = validate_plan(Path(plan_path).read_text())
            except InvalidPlanError as e:
                logger.error(f"{e.message}: {json.dumps(e.details, default=str)}")
                return False
            result = await orchestrator.run(job_id, plan, max_iterations=max_iterations)
        else:
            result = await orchestrator.run_from_brief(job_id, brief, max_iterations=max_iterations)
    finally:
        await renderer.close()

    if result is None:
        job = registry.get_job(job_id)
        logger.error(f"Job {job_id} failed: {job.error if job else 'unknown'}")
        return False

    text = json.dumps(result.to_dict(), indent=2, ensure_ascii=False)
    if output:
        Path(output).write_text(text)
        logger.info(f"Result written to {output}")
    else:
        print(text)
    return True


def validate_config() -> bool:
    from core.config import get_config

    issues = get_config().validate()
    for issue in issues:
        print(f"  - {issue}")
    if issues:
        print(f"Configuration has {len(issues)} issue(s)")
        return False
    print("Configuration OK")
    return True


async def check_status(server_url: str) -> bool:
    import aiohttp

    async with aiohttp.ClientSession() as session:
        try:
            async with session.get(f"{server_url}/health") as resp:
                if resp.status != 200:
                    print(f"Server returned status {resp.status}")
                    return False
                data = await resp.json()
        except aiohttp.ClientError as e:
            print(f"Cannot connect to server: {e}")
            return False

    print(f"Server: {server_url}")
    print("Status: Online")
    print(f"Jobs: {data['jobs']} ({data['running_jobs']} running)")
    print(f"Stream subscribers: {data['subscribers']}")
    return True


def main():
    parser = argparse.ArgumentParser(
        description="Video Refinery - iterative video plan refinement",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Start SSE server
    python main.py server

    # Refine an existing plan
    python main.py refine --plan plan.json --iterations 2

    # Draft and refine a plan from a brief
    python main.py refine --brief "Invoicing for freelancers" -o result.json

    # Check a running server
    python main.py status
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Server command
    server_parser = subparsers.add_parser("server", help="Start SSE server")
    server_parser.add_argument("--host", help="Host to bind")
    server_parser.add_argument("--port", type=int, help="Port to bind")

    # Refine command
    refine_parser = subparsers.add_parser("refine", help="Refine one plan")
    source = refine_parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--plan", "-p", help="Plan JSON file")
    source.add_argument("--brief", "-b", help="Product brief")
    refine_parser.add_argument("--iterations", "-n", type=int, help="Max refinement iterations")
    refine_parser.add_argument("--output", "-o", help="Write result JSON to this file")

    subparsers.add_parser("validate-config", help="Check configuration")

    # Status command
    status_parser = subparsers.add_parser("status", help="Check server status")
    status_parser.add_argument(
        "--server",
        default="http://localhost:8765",
        help="SSE server URL",
    )

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "server":
        asyncio.run(start_server(host=args.host, port=args.port))

    elif args.command == "refine":
        if args.iterations is not None and args.iterations < 1:
            parser.error("--iterations must be at least 1")
        ok = asyncio.run(
            refine(
                plan_path=args.plan,
                brief=args.brief,
                max_iterations=args.iterations,
                output=args.output,
            )
        )
        sys.exit(0 if ok else 1)

    elif args.command == "validate-config":
        sys.exit(0 if validate_config() else 1)

    elif args.command == "status":
        sys.exit(0 if asyncio.run(check_status(args.server)) else 1)


if __name__ == "__main__":
    main()
