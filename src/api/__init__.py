"""HTTP API layer (FastAPI).

This module exposes a small, versioned `/api/v1` surface for execution engines and runners to:
- create/read/update workflows and jobs
- claim, finish and re-queue jobs
- poll the queue and inspect runners

The API is intentionally thin: core behavior lives in `src/wf` and `src/storage`.
"""
