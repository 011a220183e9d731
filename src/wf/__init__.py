"""Workflow/job persistence and the job claiming protocol.

- `types`: Workflow, Task, Job records and the job execution states
- `backend`: stores, state transitions, claiming and queue selection
- `factory`: validation in front of the backend's create operations

Execution of task chains lives elsewhere (`src/runtime`); this package only
records what the engine reports.
"""
