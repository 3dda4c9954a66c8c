"""
BatchAnalyzer -- read-only scoping of a billing run.

Contract:
    ``analyze()`` selects the eligible due schedules for a billing date and
    returns a ``BatchAnalysis``.  ``can_run_billing_batch()`` answers the
    same question with a COUNT, without loading rows.

Selection:
    include_overdue=True   ACTIVE, not deleted, due_date <= billing_date
    include_overdue=False  ACTIVE, not deleted, due_date == billing_date

    Rows come back ordered by (due_date, due_number); the processor keeps
    that order.

Non-goals:
    - Never mutates a due schedule.
"""

from __future__ import annotations

from collections import defaultdict
from datetime import date

from sqlalchemy import Select, func, select
from sqlalchemy.orm import Session

from billing_kernel.logging_config import get_logger
from billing_kernel.models.due_schedule import DueSchedule, DueStatus

from billing_batch.domain.types import BatchAnalysis, BatchPreview, MonthGroup

logger = get_logger("batch.analyzer")


class BatchAnalyzer:
    def __init__(self, session: Session):
        self._session = session

    @staticmethod
    def _eligible(query: Select, billing_date: date, include_overdue: bool) -> Select:
        query = (
            query
            .where(DueSchedule.status == DueStatus.ACTIVE.value)
            .where(DueSchedule.deleted.is_(False))
        )
        if include_overdue:
            return query.where(DueSchedule.due_date <= billing_date)
        return query.where(DueSchedule.due_date == billing_date)

    def analyze(self, billing_date: date, include_overdue: bool = True) -> BatchAnalysis:
        """Select eligible schedules and derive counts and month groups."""
        schedules = tuple(
            self._session.execute(
                self._eligible(select(DueSchedule), billing_date, include_overdue)
                .order_by(DueSchedule.due_date, DueSchedule.due_number)
            ).scalars()
        )

        overdue = sum(1 for s in schedules if s.due_date < billing_date)
        current = sum(1 for s in schedules if s.due_date == billing_date)

        grouped: dict[str, list[DueSchedule]] = defaultdict(list)
        for schedule in schedules:
            grouped[schedule.due_date.strftime("%Y-%m")].append(schedule)
        month_groups = tuple(
            MonthGroup(month=month, due_schedules=tuple(grouped[month]))
            for month in sorted(grouped)
        )

        analysis = BatchAnalysis(
            billing_date=billing_date,
            include_overdue=include_overdue,
            due_schedules=schedules,
            overdue_count=overdue,
            current_count=current,
            month_groups=month_groups,
        )

        logger.info(
            "billing_scope_analyzed",
            extra={
                "billing_date": billing_date.isoformat(),
                "include_overdue": include_overdue,
                "total_count": analysis.total_count,
                "overdue_count": overdue,
                "current_count": current,
                "future_count": analysis.future_count,
                "month_count": analysis.month_count,
            },
        )
        for group in month_groups:
            logger.debug(
                "billing_scope_month",
                extra={
                    "month": group.month,
                    "count": group.count,
                    "amount": str(group.amount),
                },
            )
        return analysis

    def count_eligible(self, billing_date: date, include_overdue: bool = True) -> int:
        return self._session.execute(
            self._eligible(
                select(func.count()).select_from(DueSchedule),
                billing_date,
                include_overdue,
            )
        ).scalar_one()

    def can_run_billing_batch(self, billing_date: date, include_overdue: bool = True) -> bool:
        """Pre-flight check: is there anything to bill on ``billing_date``?"""
        return self.count_eligible(billing_date, include_overdue) > 0

    def preview(self, billing_date: date, include_overdue: bool = True) -> BatchPreview:
        return BatchPreview.from_analysis(self.analyze(billing_date, include_overdue))
