from __future__ import annotations

import argparse
import importlib
import logging
import os
import sys
from typing import Any

from src.config.load_config import ConfigError, default_config_path, load_app_config
from src.runtime.worker import ChainExecutor, JobRunner, WorkerConfig
from src.wf.backend import WorkflowBackend


logger = logging.getLogger(__name__)


def load_executor(spec: str) -> ChainExecutor:
    """Resolve `package.module:callable` to the chain executor it names."""
    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise SystemExit(f"--executor must look like 'package.module:callable', got {spec!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise SystemExit(f"Cannot import executor module {module_name!r}: {e}") from e

    target: Any = module
    for part in attr.split("."):
        target = getattr(target, part, None)
        if target is None:
            raise SystemExit(f"Executor {spec!r} not found")
    if not callable(target):
        raise SystemExit(f"Executor {spec!r} is not callable")
    return target


def _parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a job runner against the workflow store.")
    parser.add_argument(
        "--executor",
        required=True,
        help="Chain executor as 'package.module:callable'; called with each claimed job.",
    )
    parser.add_argument("--runner-id", default="", help="Runner identifier (default: config, then <hostname>-<pid>).")
    parser.add_argument(
        "--db-path",
        default="",
        help="SQLite path (default: config store.sqlite_path, env WF_SQLITE_PATH or data/wf.db).",
    )
    parser.add_argument(
        "--drain",
        action="store_true",
        help="Process eligible jobs until the queue is empty, then exit instead of polling.",
    )
    parser.add_argument("--log-level", default=os.getenv("WF_LOG_LEVEL", "info"))
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(sys.argv[1:] if argv is None else argv)
    logging.basicConfig(
        level=str(args.log_level).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    executor = load_executor(args.executor)

    try:
        cfg = load_app_config()
    except ConfigError as e:
        logger.warning("no usable config at %s (%s); using defaults", default_config_path(), e)
        cfg = None

    db_path = args.db_path or (cfg.store.sqlite_path if cfg else None)
    backend = WorkflowBackend.open(
        db_path,
        buckets=cfg.buckets if cfg else None,
        busy_timeout_s=cfg.store.busy_timeout_s if cfg else 5.0,
    )

    runner_id = args.runner_id or (cfg.runner.identifier if cfg else "") or f"runner-{os.getpid()}"
    worker_cfg = WorkerConfig(poll_interval_s=cfg.runner.poll_interval_s) if cfg else WorkerConfig()
    runner = JobRunner(backend, executor, runner_id=runner_id, config=worker_cfg)

    try:
        if args.drain:
            recovered = runner.recover()
            if recovered:
                logger.info("runner %s re-queued %d job(s)", runner_id, len(recovered))
            while runner.run_once() is not None:
                pass
            logger.info("runner %s drained queue: processed=%d", runner_id, runner.status_snapshot()["processed"])
            return 0

        runner.start()
        logger.info("runner %s polling every %.2fs", runner_id, worker_cfg.poll_interval_s)
        try:
            while runner.running:
                runner.join(timeout_s=1.0)
        except KeyboardInterrupt:
            logger.info("runner %s interrupted", runner_id)
        return 0
    finally:
        runner.stop()
        backend.quit()
