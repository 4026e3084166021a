import json
import logging
import smtplib
from email.message import EmailMessage
from typing import Any, Optional

from config import Settings, get_settings
from errors import DeliveryFailure
from models import ScheduledReport, ScheduledReportExecution

logger = logging.getLogger(__name__)


class ReportDeliverer:
    """Hands a finished report to its recipients.

    Implementations raise ``DeliveryFailure`` when the report could not be
    sent; the executor records that on the execution row.
    """

    def deliver(
        self,
        execution: ScheduledReportExecution,
        report: ScheduledReport,
        payload: dict[str, Any],
    ) -> None:
        raise NotImplementedError


class LogDeliverer(ReportDeliverer):
    def deliver(self, execution, report, payload) -> None:
        recipients = list(report.recipients or [])
        logger.info(
            f"report_delivery: execution_id={execution.id} report_id={report.id} "
            f"type={report.report_type.value} recipients={len(recipients)} channel=log"
        )


def _subject(report: ScheduledReport, execution: ScheduledReportExecution) -> str:
    return f"{report.name} - {execution.executed_at:%Y-%m-%d}"


def _body(report: ScheduledReport, payload: dict[str, Any]) -> str:
    lines = [
        f"Report: {report.name}",
        f"Type: {report.report_type.value.replace('_', ' ')}",
        f"Frequency: {report.frequency.value}",
    ]
    if report.description:
        lines.append(report.description)
    lines.append("")
    lines.append(json.dumps(payload, indent=2, sort_keys=True))
    return "\n".join(lines)


class SmtpDeliverer(ReportDeliverer):
    def __init__(self, settings: Optional[Settings] = None, timeout: int = 30) -> None:
        self.settings = settings or get_settings()
        self.timeout = timeout

    def build_message(
        self,
        execution: ScheduledReportExecution,
        report: ScheduledReport,
        payload: dict[str, Any],
    ) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = _subject(report, execution)
        msg["From"] = self.settings.smtp_sender
        msg["To"] = ", ".join(report.recipients)
        msg.set_content(_body(report, payload))
        msg.add_attachment(
            json.dumps(payload, indent=2).encode("utf-8"),
            maintype="application",
            subtype="json",
            filename=f"{report.report_type.value}-{execution.executed_at:%Y%m%d}.json",
        )
        return msg

    def deliver(self, execution, report, payload) -> None:
        if not report.recipients:
            raise DeliveryFailure("No recipients configured")
        msg = self.build_message(execution, report, payload)
        try:
            with smtplib.SMTP(
                self.settings.smtp_host, self.settings.smtp_port, timeout=self.timeout
            ) as server:
                server.ehlo()
                server.starttls()
                server.ehlo()
                if self.settings.smtp_user:
                    server.login(self.settings.smtp_user, self.settings.smtp_password)
                server.send_message(msg)
        except (smtplib.SMTPException, OSError) as exc:
            raise DeliveryFailure(f"SMTP delivery failed: {exc}") from exc
        logger.info(
            f"report_delivery: execution_id={execution.id} report_id={report.id} "
            f"recipients={len(report.recipients)} channel=smtp"
        )


def default_deliverer(settings: Optional[Settings] = None) -> ReportDeliverer:
    settings = settings or get_settings()
    if settings.smtp_host:
        return SmtpDeliverer(settings)
    return LogDeliverer()


def warn_if_log_only(settings: Optional[Settings] = None) -> bool:
    settings = settings or get_settings()
    if settings.smtp_host:
        return False
    logger.warning(
        "report_delivery: no SMTP host configured, scheduled reports are only "
        "logged and recorded as sent"
    )
    return True
