"""
Video Refinery Services

- jobs: job registry, stage state machine, progress reporting, stale-job sweep
- streaming: progress pub/sub and the SSE server
- refinement: plan generation, frame rendering, visual critique, corrections
"""
