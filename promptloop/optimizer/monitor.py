"""
Continuous monitoring: periodically offers every configured target to the
optimizer.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from promptloop.const import MONITOR_INTERVAL
from promptloop.errors import PromptLoopError, SessionBusyError
from promptloop.models import DetectedIssue, LogEntry, OptimizationSource, TriggerSource
from promptloop.optimizer.core import AutonomousOptimizer, SessionResult

logger = logging.getLogger("promptloop.monitor")

Collector = Callable[["MonitorTarget"], tuple[list[DetectedIssue], list[LogEntry]]]


@dataclass
class MonitorTarget:
    """
    One (user, app) prompt file under watch.

    Attributes:
        user_id: Owner of the app
        app_id: App whose prompt is watched
        target_path: Prompt file, relative to the workspace root
        prompt: Prompt text; extracted from the issues when omitted
        domain: Optional domain used for strategy selection
        policy: Policy override; the stored policy is used when omitted
        issues: Static issues, used when there is no collector
        recent_activity: Static activity sample, used when there is no collector
        collector: Returns fresh (issues, activity) on every tick
    """

    user_id: str
    app_id: str
    target_path: str
    prompt: str | None = None
    domain: str | None = None
    policy: dict[str, Any] | None = None
    issues: list[DetectedIssue] = field(default_factory=list)
    recent_activity: list[LogEntry] = field(default_factory=list)
    collector: Collector | None = None

    def source(self) -> OptimizationSource:
        issues, activity = self.collector(self) if self.collector else (self.issues, self.recent_activity)
        return OptimizationSource(
            user_id=self.user_id,
            app_id=self.app_id,
            target_path=self.target_path,
            prompt=self.prompt,
            issues=issues,
            recent_activity=activity,
            domain=self.domain,
            triggered_by=TriggerSource.SCHEDULE
        )


class ContinuousMonitor:
    """
    Runs ``run_once`` every ``interval`` seconds on a background thread.

    A target whose (user, app) already has an active session is skipped for
    that tick.
    """

    def __init__(
        self,
        optimizer: AutonomousOptimizer,
        targets: Sequence[MonitorTarget],
        interval: float = MONITOR_INTERVAL
    ) -> None:
        self.optimizer = optimizer
        self.targets = list(targets)
        self.interval = interval
        self.stop_event = threading.Event()
        self.thread: threading.Thread | None = None

    def run_once(self) -> list[SessionResult]:
        results: list[SessionResult] = []
        for target in self.targets:
            try:
                results.append(self.optimizer.run_optimization(target.source(), target.policy))
            except SessionBusyError as e:
                logger.info(f"[bold blue][MONITOR][/bold blue] Skipping {target.user_id}/{target.app_id}: {e}")
            except PromptLoopError as e:
                logger.error(
                    f"[bold red][MONITOR][/bold red] {target.user_id}/{target.app_id} failed "
                    f"({type(e).__name__}): {e}"
                )
        logger.info(f"[bold blue][MONITOR][/bold blue] Tick finished: {len(results)}/{len(self.targets)} targets ran")
        return results

    def _worker(self) -> None:
        while not self.stop_event.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Unexpected error in monitoring loop")

            # wait instead of sleep so stop() interrupts immediately
            if self.stop_event.wait(timeout=self.interval):
                break

    def start(self) -> None:
        if self.thread is not None and self.thread.is_alive():
            return
        self.stop_event.clear()
        self.thread = threading.Thread(target=self._worker, name="promptloop-monitor", daemon=True)
        self.thread.start()
        logger.info(f"[bold blue][MONITOR][/bold blue] Watching {len(self.targets)} target(s) every {self.interval:g}s")

    def stop(self, timeout: float | None = None) -> None:
        self.stop_event.set()
        if self.thread is not None:
            self.thread.join(timeout)
        logger.info("[bold blue][MONITOR][/bold blue] Stopped")
