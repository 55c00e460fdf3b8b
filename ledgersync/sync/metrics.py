"""
Sync run metrics.

Tracks run outcomes, record counts and source latency in memory to give
operators a view of the sync engine from the status endpoint and CLI.
"""

from typing import Dict, Any, Optional, List
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass, field, asdict
from enum import Enum


class RunStatus(str, Enum):
    """Status of a sync run."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"  # Another run held the stream


@dataclass
class SyncRunMetrics:
    """Metrics for a single sync run."""

    run_id: str
    started_at: datetime
    ended_at: Optional[datetime] = None
    status: RunStatus = RunStatus.SUCCESS

    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    total_pages: int = 0
    pages_failed: int = 0

    records_fetched: int = 0
    records_inserted: int = 0
    records_duplicate: int = 0

    duration_seconds: float = 0.0
    errors: List[str] = field(default_factory=list)
    error_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = asdict(self)
        for key in ("started_at", "ended_at", "window_start", "window_end"):
            data[key] = data[key].isoformat() if data[key] else None
        data["status"] = self.status.value
        return data


@dataclass
class AggregateMetrics:
    """Aggregated metrics across multiple sync runs."""

    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    skipped_runs: int = 0

    total_records_inserted: int = 0
    total_duplicates: int = 0
    total_errors: int = 0
    avg_duration_seconds: float = 0.0

    last_success: Optional[datetime] = None
    last_failure: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        data = asdict(self)
        for key in ("last_success", "last_failure"):
            if data[key]:
                data[key] = data[key].isoformat()
        return data


class SyncMetrics:
    """
    In-memory metrics tracker for the sync orchestrator.

    Keeps a bounded history of recent runs. Runs are keyed by id so the
    page-job handlers can add their counts to the run that spawned them.
    """

    def __init__(self, history_size: int = 100):
        """
        Args:
            history_size: Number of recent runs to keep in memory
        """
        self.history_size = history_size
        self._active: Dict[str, SyncRunMetrics] = {}
        self._history: List[SyncRunMetrics] = []

    def start_run(self, run_id: str) -> SyncRunMetrics:
        """Start tracking a run."""
        run = SyncRunMetrics(run_id=run_id, started_at=datetime.now(timezone.utc))
        self._active[run_id] = run
        return run

    def record_page(self, run_id: str, fetched: int, inserted: int, duplicates: int):
        """Add one page's record counts to a run."""
        run = self._active.get(run_id)
        if run:
            run.records_fetched += fetched
            run.records_inserted += inserted
            run.records_duplicate += duplicates

    def record_error(self, run_id: str, error: str):
        """Record an error against a run."""
        run = self._active.get(run_id)
        if run:
            run.errors.append(error)
            run.error_count += 1

    def end_run(self, run_id: str, status: RunStatus) -> Optional[SyncRunMetrics]:
        """Close a run and move it to history."""
        run = self._active.pop(run_id, None)
        if not run:
            return None

        run.ended_at = datetime.now(timezone.utc)
        run.status = status
        run.duration_seconds = (run.ended_at - run.started_at).total_seconds()

        self._history.append(run)
        if len(self._history) > self.history_size:
            self._history = self._history[-self.history_size :]
        return run

    def get_last_run(self) -> Optional[SyncRunMetrics]:
        """Most recent completed run."""
        return self._history[-1] if self._history else None

    def get_history(self, limit: Optional[int] = None) -> List[SyncRunMetrics]:
        """Recent runs, newest first."""
        history = list(reversed(self._history))
        if limit:
            history = history[:limit]
        return history

    def get_aggregate_metrics(self, hours: Optional[int] = None) -> AggregateMetrics:
        """
        Aggregate over recent runs.

        Args:
            hours: Only include runs from the last N hours (None = all history)
        """
        runs = self._history
        if hours:
            cutoff = datetime.now(timezone.utc) - timedelta(hours=hours)
            runs = [r for r in runs if r.started_at >= cutoff]

        metrics = AggregateMetrics()
        if not runs:
            return metrics

        metrics.total_runs = len(runs)
        for run in runs:
            if run.status == RunStatus.SUCCESS:
                metrics.successful_runs += 1
                metrics.last_success = run.started_at
            elif run.status == RunStatus.FAILED:
                metrics.failed_runs += 1
                metrics.last_failure = run.started_at
            else:
                metrics.skipped_runs += 1

        metrics.total_records_inserted = sum(r.records_inserted for r in runs)
        metrics.total_duplicates = sum(r.records_duplicate for r in runs)
        metrics.total_errors = sum(r.error_count for r in runs)
        metrics.avg_duration_seconds = sum(r.duration_seconds for r in runs) / len(runs)
        return metrics

    def get_success_rate(self, hours: Optional[int] = None) -> float:
        """Share of non-skipped runs that succeeded (0.0 to 1.0)."""
        agg = self.get_aggregate_metrics(hours)
        attempted = agg.successful_runs + agg.failed_runs
        if attempted == 0:
            return 0.0
        return agg.successful_runs / attempted
