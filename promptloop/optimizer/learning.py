"""
Feedback-learning store.

Insights are rebuilt from persisted history on every call. Nothing is cached
between calls, so two optimizers sharing a ``RecordStore`` always agree.
"""

import logging
from datetime import datetime, timedelta
from typing import Sequence

from promptloop.const import (
    DEFAULT_SUCCESS_RATE,
    EXTERNAL_CALL_TIMEOUT,
    HISTORY_COLLECTION,
    HISTORY_LIMIT,
    HISTORY_WINDOW_DAYS,
)
from promptloop.external import call_with_timeout
from promptloop.models import DetectedIssue, HistoryRecord, LearningInsights, Strategy
from promptloop.optimizer.strategies import BASE_STRATEGIES, DEFAULT_ISSUE_PATTERNS, STRATEGIES_BY_ID
from promptloop.storage import RecordStore

logger = logging.getLogger("promptloop.learning")


class LearningStore:
    """
    Records optimization attempts and derives ``LearningInsights`` from them.

    Args:
        store: Backing record store
        window_days: Only history newer than this is considered
        limit: At most this many recent records are considered
        timeout: Timeout in seconds for store calls
    """

    def __init__(
        self,
        store: RecordStore,
        window_days: int = HISTORY_WINDOW_DAYS,
        limit: int = HISTORY_LIMIT,
        timeout: float = EXTERNAL_CALL_TIMEOUT
    ) -> None:
        self.store = store
        self.window_days = window_days
        self.limit = limit
        self.timeout = timeout

    def record_attempt(self, record: HistoryRecord) -> None:
        call_with_timeout(
            self.store.put,
            HISTORY_COLLECTION,
            record.id,
            record.model_dump(mode="json"),
            service="store",
            timeout=self.timeout
        )
        outcome = "success" if record.success else "failure"
        logger.info(f"[bold magenta][LEARNING][/bold magenta] Recorded {outcome} for strategy {record.strategy}")

    def history(self, user_id: str, app_id: str, now: datetime | None = None) -> list[HistoryRecord]:
        """Recent attempts for (user, app), newest first."""
        cutoff = (now or datetime.now()) - timedelta(days=self.window_days)
        rows = call_with_timeout(
            self.store.query,
            HISTORY_COLLECTION,
            lambda r: r.get("user_id") == user_id and r.get("app_id") == app_id,
            service="store",
            timeout=self.timeout
        )
        records = [HistoryRecord.model_validate(row) for row in rows]
        records = [r for r in records if r.timestamp >= cutoff]
        records.sort(key=lambda r: r.timestamp, reverse=True)
        return records[:self.limit]

    def insights(self, user_id: str, app_id: str, now: datetime | None = None) -> LearningInsights:
        return build_insights(self.history(user_id, app_id, now))

    def historical_success_rate(self, user_id: str, app_id: str, now: datetime | None = None) -> float:
        history = self.history(user_id, app_id, now)
        if not history:
            return DEFAULT_SUCCESS_RATE
        return sum(1 for r in history if r.success) / len(history)


def build_insights(history: Sequence[HistoryRecord]) -> LearningInsights:
    """Derive insights from raw history, seeded with the default issue patterns."""
    insights = LearningInsights(
        issue_type_to_strategies={k: list(v) for k, v in DEFAULT_ISSUE_PATTERNS.items()}
    )
    for record in history:
        if record.success:
            insights.success_counts[record.strategy] = insights.success_counts.get(record.strategy, 0) + 1
            for issue_type in record.issue_types:
                strategies = insights.issue_type_to_strategies.setdefault(issue_type, [])
                if record.strategy not in strategies:
                    strategies.append(record.strategy)
            if record.domain:
                strategies = insights.domain_to_strategies.setdefault(record.domain, [])
                if record.strategy not in strategies:
                    strategies.append(record.strategy)
        else:
            insights.failure_counts[record.strategy] = insights.failure_counts.get(record.strategy, 0) + 1
    return insights


def prioritize_strategies(
    insights: LearningInsights,
    issues: Sequence[DetectedIssue] = (),
    domain: str | None = None,
    limit: int = 5
) -> list[Strategy]:
    """
    Order the strategy catalog for one generation round.

    Ranks by net historical success (stable for equal scores), keeps only the
    strategies with an affinity to the current issue types (restoring at
    least two general ones if the filter is too strict), then puts the
    domain's proven strategies first.
    """
    ranked = sorted(BASE_STRATEGIES, key=lambda s: insights.net_score(s.id), reverse=True)

    relevant: set[str] = set()
    for issue in issues:
        relevant.update(insights.issue_type_to_strategies.get(issue.type.value, []))

    if relevant:
        ranked = [s for s in ranked if s.id in relevant]
        if len(ranked) < 2:
            ranked.extend(BASE_STRATEGIES[:2])

    if domain:
        domain_strategies = [
            STRATEGIES_BY_ID[sid] for sid in insights.domain_to_strategies.get(domain, []) if sid in STRATEGIES_BY_ID
        ]
        ranked = domain_strategies + ranked

    seen: set[str] = set()
    unique = []
    for strategy in ranked:
        if strategy.id not in seen:
            seen.add(strategy.id)
            unique.append(strategy)
    return unique[:limit]
