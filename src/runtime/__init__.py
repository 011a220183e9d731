"""Runtime orchestration (job runners).

This layer is responsible for:
- polling the queue and claiming jobs through the backend
- handing claimed jobs to a chain executor
- finishing or re-queueing jobs with the executor's results

It does not depend on the HTTP layer (`src/api`); runners are hosted by
`src/cli/run_worker.py` as separate processes.
"""
