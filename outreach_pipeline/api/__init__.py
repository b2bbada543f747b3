"""HTTP API layer (FastAPI).

This module exposes a small, versioned `/api/v1` surface to:
- create/list batches and drive them (start, cancel, retry-failed, finalize)
- inspect units and their trace events, run/retry/cancel/reset single units
- observe background tasks and stale units

The API is intentionally thin: core behavior lives in `outreach_pipeline/runtime` and `outreach_pipeline/storage`.
"""
