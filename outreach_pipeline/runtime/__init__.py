"""Runtime orchestration (retry controller, concurrency pool, finalizer, background tasks).

This layer is responsible for:
- driving units through bounded attempts with backoff
- running a batch's units with bounded concurrency and finalizing the batch
- propagating cancellation through the store

It should remain independent from the HTTP layer (`outreach_pipeline/api`), so
both CLI and API can reuse the same execution logic via `PipelineService`.
"""
