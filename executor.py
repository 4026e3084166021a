import logging
import time
from datetime import date, datetime, timedelta, timezone as dt_timezone
from typing import Any, Optional

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from config import Settings, get_settings
from delivery import ReportDeliverer, default_deliverer
from errors import AggregationFailure, DeliveryFailure
from models import (
    DeliveryStatus,
    ExecutionStatus,
    ScheduledReport,
    ScheduledReportExecution,
    ScheduleStatus,
    utcnow,
)
from periods import report_range_for_frequency
from recurrence import next_occurrence, resolve_timezone, utc_naive
from reports import ReportService, generate_report
from schemas import ReportParameters

logger = logging.getLogger(__name__)

NOT_DELIVERED = "Report not delivered: generation failed"


class ScheduledReportExecutor:
    """Runs due scheduled reports and records each firing.

    An execution moves pending -> running -> completed | failed. Only a
    completed execution advances the schedule; a failed one puts the schedule
    into ``error`` and leaves ``next_execution`` where it was. Delivery is
    tracked separately on the execution and never changes its status.
    """

    def __init__(
        self,
        session: Session,
        deliverer: Optional[ReportDeliverer] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.deliverer = deliverer or default_deliverer(self.settings)

    def _lease_cutoff(self, now: datetime) -> datetime:
        return now - timedelta(minutes=self.settings.claim_timeout_minutes)

    def due_reports(self, now: Optional[datetime] = None) -> list[ScheduledReport]:
        now = utc_naive(now or utcnow())
        stmt = (
            select(ScheduledReport)
            .where(
                ScheduledReport.status == ScheduleStatus.active,
                ScheduledReport.next_execution <= now,
                or_(
                    ScheduledReport.claimed_at.is_(None),
                    ScheduledReport.claimed_at < self._lease_cutoff(now),
                ),
            )
            .order_by(ScheduledReport.next_execution, ScheduledReport.id)
        )
        return list(self.session.scalars(stmt).all())

    def claim(self, report_id: int, now: datetime, manual: bool = False) -> bool:
        stmt = update(ScheduledReport).where(
            ScheduledReport.id == report_id,
            or_(
                ScheduledReport.claimed_at.is_(None),
                ScheduledReport.claimed_at < self._lease_cutoff(now),
            ),
        )
        if manual:
            stmt = stmt.where(
                ScheduledReport.status.in_([ScheduleStatus.active, ScheduleStatus.error])
            )
        else:
            stmt = stmt.where(
                ScheduledReport.status == ScheduleStatus.active,
                ScheduledReport.next_execution <= now,
            )
        result = self.session.execute(
            stmt.values(claimed_at=now).execution_options(synchronize_session=False)
        )
        self.session.commit()
        return result.rowcount == 1

    def _release(self, report: ScheduledReport) -> None:
        report.claimed_at = None

    def _report_day(self, report: ScheduledReport, now: datetime) -> date:
        tz = resolve_timezone(report.timezone)
        return now.replace(tzinfo=dt_timezone.utc).astimezone(tz).date()

    def build_payload(self, report: ScheduledReport, now: datetime) -> dict[str, Any]:
        try:
            parameters = ReportParameters.model_validate(report.parameters or {})
            date_range = report_range_for_frequency(
                report.frequency,
                self._report_day(report, now),
                parameters.model_dump(),
            )
            result = generate_report(
                ReportService(self.session, report.family_id),
                report.report_type,
                date_range,
                parameters,
            )
        except Exception as exc:
            raise AggregationFailure(report.report_type.value, exc) from exc
        return {
            "report_type": report.report_type.value,
            "period_start": date_range.start.isoformat(),
            "period_end": date_range.end.isoformat(),
            "generated_at": now.isoformat(),
            "data": result.model_dump(mode="json"),
        }

    def execute(
        self,
        report_id: int,
        now: Optional[datetime] = None,
        manual: bool = False,
    ) -> Optional[ScheduledReportExecution]:
        now = utc_naive(now or utcnow())
        if not self.claim(report_id, now, manual=manual):
            logger.info(
                f"scheduled_report_run: id={report_id} status=skipped reason=not_claimed"
            )
            return None

        report = self.session.get(ScheduledReport, report_id)
        self.session.refresh(report)
        execution = ScheduledReportExecution(
            scheduled_report_id=report.id,
            executed_at=now,
            status=ExecutionStatus.pending,
            delivery_status=DeliveryStatus.pending,
        )
        self.session.add(execution)
        self.session.flush()
        execution.status = ExecutionStatus.running
        self.session.commit()
        logger.info(
            f"scheduled_report_run: id={report.id} execution_id={execution.id} "
            f"type={report.report_type.value} status=running"
        )

        try:
            payload = self.build_payload(report, now)
            next_run = next_occurrence(
                report.frequency,
                report.delivery_day,
                now,
                report.timezone,
                report.delivery_hour,
            )
        except Exception as exc:
            self.session.rollback()
            failure = exc if isinstance(exc, AggregationFailure) else AggregationFailure(
                report.report_type.value, exc
            )
            logger.exception(
                f"scheduled_report_run: id={report.id} execution_id={execution.id} "
                f"status=failed"
            )
            self._fail(report, execution, failure)
            return execution

        execution.status = ExecutionStatus.completed
        execution.completed_at = utcnow()
        execution.report_data = payload
        report.last_execution = now
        report.next_execution = utc_naive(next_run)
        if manual and report.status == ScheduleStatus.error:
            report.status = ScheduleStatus.active
        self._release(report)
        self.session.commit()
        logger.info(
            f"scheduled_report_run: id={report.id} execution_id={execution.id} "
            f"status=completed next_execution={report.next_execution}"
        )

        self._deliver(report, execution, payload)
        return execution

    def _fail(
        self,
        report: ScheduledReport,
        execution: ScheduledReportExecution,
        failure: AggregationFailure,
    ) -> None:
        execution.status = ExecutionStatus.failed
        execution.completed_at = utcnow()
        execution.error = str(failure)
        execution.delivery_status = DeliveryStatus.failed
        execution.delivery_error = NOT_DELIVERED
        report.status = ScheduleStatus.error
        self._release(report)
        self.session.commit()

    def _deliver(
        self,
        report: ScheduledReport,
        execution: ScheduledReportExecution,
        payload: dict[str, Any],
    ) -> None:
        try:
            self.deliverer.deliver(execution, report, payload)
        except DeliveryFailure as exc:
            execution.delivery_status = DeliveryStatus.failed
            execution.delivery_error = str(exc)
            logger.warning(
                f"report_delivery: execution_id={execution.id} status=failed error={exc}"
            )
        except Exception as exc:
            execution.delivery_status = DeliveryStatus.failed
            execution.delivery_error = str(exc) or exc.__class__.__name__
            logger.exception(f"report_delivery: execution_id={execution.id} status=failed")
        else:
            execution.delivery_status = DeliveryStatus.sent
        self.session.commit()

    def run_due(
        self,
        now: Optional[datetime] = None,
        budget_seconds: Optional[float] = None,
    ) -> list[ScheduledReportExecution]:
        """Execute every due report until the wall-clock budget runs out.

        Reports left over once the budget is spent stay due and are picked
        up by the next pass.
        """
        if budget_seconds is None:
            budget_seconds = self.settings.report_run_budget_secs
        started = time.monotonic()
        due = self.due_reports(now)
        executions = []
        for index, report in enumerate(due):
            if time.monotonic() - started >= budget_seconds:
                logger.info(
                    f"scheduled_report_pass: deferred={len(due) - index} "
                    f"reason=budget_exhausted budget_secs={budget_seconds}"
                )
                break
            execution = self.execute(report.id, now)
            if execution is not None:
                executions.append(execution)
        return executions
