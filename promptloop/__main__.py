"""
Command-line entry point: ``python -m promptloop --targets targets.json``.

The targets file holds a JSON list of objects with ``user_id``, ``app_id``,
``target_path`` and optionally ``prompt``, ``domain``, ``policy``, ``issues``
and ``recent_activity``.
"""

import argparse
import json
import signal
import sys
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from promptloop.const import DEFAULT_STORE_PATH, MONITOR_INTERVAL
from promptloop.generation import GeminiGenerationService
from promptloop.log import configure_logging
from promptloop.models import DetectedIssue, LogEntry
from promptloop.optimizer import AutonomousOptimizer, ContinuousMonitor, MonitorTarget, PipelineConfig
from promptloop.storage import RecordStore
from promptloop.workspace import LocalWorkspace


def load_targets(path: Path) -> list[MonitorTarget]:
    entries = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(entries, list):
        raise ValueError(f"{path} must contain a JSON list of targets")
    return [
        MonitorTarget(
            user_id=entry["user_id"],
            app_id=entry["app_id"],
            target_path=entry["target_path"],
            prompt=entry.get("prompt"),
            domain=entry.get("domain"),
            policy=entry.get("policy"),
            issues=[DetectedIssue.model_validate(i) for i in entry.get("issues", [])],
            recent_activity=[LogEntry.model_validate(e) for e in entry.get("recent_activity", [])]
        )
        for entry in entries
    ]


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="promptloop", description="Autonomous prompt optimization")
    parser.add_argument("--targets", type=Path, required=True, help="JSON file listing the watched prompts")
    parser.add_argument("--workspace", type=Path, default=Path.cwd(), help="Root of the source tree")
    parser.add_argument("--store", type=Path, default=Path(DEFAULT_STORE_PATH), help="Record store directory")
    parser.add_argument("--interval", type=float, default=MONITOR_INTERVAL, help="Seconds between ticks")
    parser.add_argument("--once", action="store_true", help="Run a single tick and exit")
    parser.add_argument("--dry-run", action="store_true", help="Never commit or create branches")
    parser.add_argument("--offline", action="store_true", help="Score candidates locally instead of via Gemini")
    args = parser.parse_args(argv)

    logger = configure_logging()

    try:
        targets = load_targets(args.targets)
    except (OSError, ValueError, KeyError, PydanticValidationError) as e:
        logger.error(f"[bold red]Could not load targets from {args.targets}:[/bold red] {e}")
        return 2

    service = None
    if not args.offline:
        try:
            service = GeminiGenerationService()
        except KeyError as e:
            logger.warning(f"{e} Falling back to local scoring.")

    config = PipelineConfig(dry_run=args.dry_run)
    optimizer = AutonomousOptimizer(LocalWorkspace(args.workspace), RecordStore(args.store), service, config)
    monitor = ContinuousMonitor(optimizer, targets, interval=args.interval)

    if args.once:
        for result in monitor.run_once():
            session = result.session
            logger.info(f"{session.id} {session.user_id}/{session.app_id}: {session.status.value} ({session.reason})")
        return 0

    def handle_signal(signum, frame):
        logger.info(f"Signal {signum} received, stopping")
        monitor.stop_event.set()

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    monitor.start()
    while monitor.thread.is_alive():
        monitor.thread.join(timeout=1)
    optimizer.commit_manager.cleanup_old_backups()
    return 0


if __name__ == "__main__":
    sys.exit(main())
