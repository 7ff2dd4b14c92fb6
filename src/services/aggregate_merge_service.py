from __future__ import annotations

import logging
from datetime import date
from typing import Callable, Iterable, List, Optional

from src.analytics.metric_merge import Measurement, apply_measurements
from src.analytics.scorecard import apply_derived_fields, resolve_targets
from src.core.config import get_settings
from src.core.errors import ConcurrentWriteConflict, NotFoundError
from src.core.locks import RowLockRegistry
from src.models.metrics import MetricsDailyRecord, ScorecardRulesRecord
from src.repositories.metrics_repository import MetricsRepository

logger = logging.getLogger(__name__)

DEFAULT_ROLE = "Sales"


class AggregateMergeService:
    """Single owner of ``metrics_daily`` writes.

    Every write path (absolute reports, increments, recomputation) runs the
    same cycle under a per-row lock: read stored row, merge, recompute
    derived fields on the merged row, compare-and-swap on ``row_version``.
    """

    _shared_locks = RowLockRegistry()

    def __init__(
        self,
        repository: MetricsRepository,
        locks: Optional[RowLockRegistry] = None,
    ) -> None:
        self.repository = repository
        self.locks = locks or self._shared_locks
        self.settings = get_settings()

    def get_daily(
        self, agency_id: str, team_member_id: str, day: date
    ) -> Optional[MetricsDailyRecord]:
        return self.repository.get_daily(agency_id, team_member_id, day)

    def apply(
        self,
        agency_id: str,
        team_member_id: str,
        day: date,
        measurements: List[Measurement],
        *,
        submission_id: Optional[str] = None,
        is_late: Optional[bool] = None,
        reported_families: Iterable[str] = (),
    ) -> Optional[MetricsDailyRecord]:
        """Merge ``measurements`` into the (agency, person, day) row.

        Returns ``None`` only when there is no row yet and nothing with a
        resolved KPI version to create one from.
        """
        families = tuple(reported_families)

        def mutate(stored: Optional[MetricsDailyRecord]) -> Optional[MetricsDailyRecord]:
            if stored is None:
                if not measurements:
                    return None
                stored = MetricsDailyRecord(
                    agency_id=agency_id,
                    team_member_id=team_member_id,
                    date=day,
                    role=self.repository.get_member_role(team_member_id) or DEFAULT_ROLE,
                )
            merged = apply_measurements(stored, measurements)
            if submission_id is not None:
                merged.final_submission_id = submission_id
            if is_late is not None:
                merged.is_late = is_late
            for family in families:
                merged.skip_merge[family] = True
            return merged

        return self._write(agency_id, team_member_id, day, mutate)

    def recompute_day(
        self, agency_id: str, team_member_id: str, day: date
    ) -> MetricsDailyRecord:
        """Re-derive hits/score/pass from stored counters, e.g. after a target change."""
        result = self._write(agency_id, team_member_id, day, lambda stored: stored)
        if result is None:
            raise NotFoundError("No daily metrics for that person and date")
        return result

    def _score(self, row: MetricsDailyRecord) -> MetricsDailyRecord:
        role = row.role or DEFAULT_ROLE
        rules = self.repository.get_rules(row.agency_id, role)
        if rules is None:
            rules = ScorecardRulesRecord(
                agency_id=row.agency_id,
                role=role,
                n_required=self.settings.default_required_hits,
            )
        targets = resolve_targets(self.repository.list_targets(row.agency_id), row.team_member_id)
        return apply_derived_fields(row, rules, targets)

    def _write(
        self,
        agency_id: str,
        team_member_id: str,
        day: date,
        mutate: Callable[[Optional[MetricsDailyRecord]], Optional[MetricsDailyRecord]],
    ) -> Optional[MetricsDailyRecord]:
        attempts = max(self.settings.merge_max_retries, 1)
        with self.locks.hold((agency_id, team_member_id, day)):
            for attempt in range(1, attempts + 1):
                stored = self.repository.get_daily(agency_id, team_member_id, day)
                merged = mutate(stored)
                if merged is None:
                    return None
                scored = self._score(merged)
                try:
                    if stored is None:
                        return self.repository.insert_daily(scored)
                    saved = self.repository.update_daily(scored, stored.row_version)
                    if saved is None:
                        raise ConcurrentWriteConflict("metrics_daily row_version moved")
                    return saved
                except ConcurrentWriteConflict:
                    logger.warning(
                        "metrics_daily write conflict agency=%s member=%s date=%s attempt=%s",
                        agency_id,
                        team_member_id,
                        day,
                        attempt,
                    )
        raise ConcurrentWriteConflict(
            f"Gave up merging metrics for member={team_member_id} date={day} after {attempts} attempts"
        )
