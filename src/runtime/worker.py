from __future__ import annotations

import logging
import threading
import traceback
from dataclasses import dataclass, field
from typing import Any, Callable

from src.wf.backend import WorkflowBackend
from src.wf.errors import BackendError, ConcurrentClaimError, InvalidArgumentError, InvalidStateError
from src.wf.types import ChainResult, Execution, Job


logger = logging.getLogger(__name__)


@dataclass
class ExecutionOutcome:
    """What a chain executor reports back for one claimed job.

    `execution` may be left as None to let the backend derive success/failure
    from `chain_results`. A non-None `requeue_after` puts the job back on the
    queue (that many seconds from now) instead of finishing it.
    """

    chain_results: list[ChainResult] = field(default_factory=list)
    onerror_results: list[ChainResult] = field(default_factory=list)
    execution: Execution | None = None
    requeue_after: float | None = None


ChainExecutor = Callable[[Job], ExecutionOutcome]


@dataclass(frozen=True)
class WorkerConfig:
    poll_interval_s: float = 0.5
    # How many queue positions to try per poll before sleeping.
    max_candidates: int = 10


class JobRunner:
    """Background runner: claims queued jobs and hands them to a chain executor.

    One runner holds at most one job at a time. Several runners (threads or
    processes) may share a store; claims are arbitrated by the backend.
    """

    def __init__(
        self,
        backend: WorkflowBackend,
        executor: ChainExecutor,
        *,
        runner_id: str,
        config: WorkerConfig | None = None,
    ) -> None:
        self.backend = backend
        self.runner_id = runner_id
        self._executor = executor
        self._config = config or WorkerConfig()
        self._thread: threading.Thread | None = None
        self._stop = threading.Event()
        self._processed = 0
        self._recovered: list[str] = []

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def status_snapshot(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "runner_id": self.runner_id,
            "poll_interval_s": float(self._config.poll_interval_s),
            "processed": self._processed,
            "recovered": list(self._recovered),
        }

    def recover(self) -> list[str]:
        """Register this runner and re-queue jobs a previous incarnation left running."""
        self.backend.register_runner(self.runner_id)
        self._recovered = self.backend.requeue_runner_jobs(self.runner_id)
        return self._recovered

    def start(self) -> None:
        if self.running:
            return
        self.recover()
        self._stop.clear()
        self._thread = threading.Thread(target=self._run_loop, name=f"wf-runner-{self.runner_id}", daemon=True)
        self._thread.start()

    def stop(self, *, timeout_s: float = 5.0) -> None:
        self._stop.set()
        t = self._thread
        if t is None:
            return
        t.join(timeout=timeout_s)

    def join(self, *, timeout_s: float | None = None) -> None:
        t = self._thread
        if t is not None:
            t.join(timeout=timeout_s)

    def _run_loop(self) -> None:
        while not self._stop.is_set():
            try:
                handled = self.run_once()
            except BackendError as e:
                # Store trouble: keep polling, the next round may succeed.
                logger.error("runner %s poll failed: %s", self.runner_id, e)
                handled = None
            except Exception:
                # Never crash the runner loop.
                logger.exception("runner %s poll raised", self.runner_id)
                handled = None
            if handled is None:
                self._stop.wait(self._config.poll_interval_s)

    def claim_next(self) -> Job | None:
        """Walk eligible jobs in queue order and claim the first one we win."""
        for offset in range(self._config.max_candidates):
            candidate = self.backend.next_job(offset)
            if candidate is None:
                return None
            try:
                return self.backend.run_job(str(candidate.uuid), self.runner_id)
            except (ConcurrentClaimError, InvalidStateError) as e:
                logger.debug("runner %s skipped job %s: %s", self.runner_id, candidate.uuid, e)
                continue
        return None

    def run_once(self) -> Job | None:
        """Heartbeat, claim one job and process it. Returns the stored result, if any."""
        self.backend.register_runner(self.runner_id)
        job = self.claim_next()
        if job is None:
            return None
        result = self._execute_one(job)
        self._processed += 1
        return result

    def _execute_one(self, job: Job) -> Job:
        try:
            outcome = self._executor(job.copy())
            if not isinstance(outcome, ExecutionOutcome):
                raise TypeError(f"executor returned {type(outcome).__name__}, expected ExecutionOutcome")
            return self._apply_outcome(job, outcome)
        except Exception as e:
            if isinstance(e, BackendError) and not isinstance(e, InvalidArgumentError):
                # The job changed under us (re-queued, finished elsewhere) or the
                # store is down; there is nothing safe to write here.
                raise
            # Any other failure becomes the job's result, so the claim is released.
            logger.exception("executor failed for job %s", job.uuid)
            failed = job.copy()
            failed.chain_results = list(job.chain_results) + [
                ChainResult(
                    result=traceback.format_exc(limit=5),
                    error=f"executor_unhandled_exception: {e}",
                )
            ]
            failed.execution = Execution.FAILED
            return self.backend.finish_job(failed)

    def _apply_outcome(self, job: Job, outcome: ExecutionOutcome) -> Job:
        done = job.copy()
        done.chain_results = list(outcome.chain_results)
        done.onerror_results = list(outcome.onerror_results)
        if outcome.requeue_after is not None:
            done.exec_after = self.backend.now() + max(0.0, float(outcome.requeue_after))
            return self.backend.queue_job(done)

        done.execution = outcome.execution or Execution.RUNNING
        return self.backend.finish_job(done)
