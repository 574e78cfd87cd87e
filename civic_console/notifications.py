"""
Side effects that follow report changes.

These run after the request has been answered (FastAPI background tasks).
Nothing here is needed for correctness, so failures are logged and
dropped.
"""

import logging
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Any, Dict, Optional

from civic_console import settings
from civic_console.database import ReportStore
from civic_console.schemas import ISSUE_DEPARTMENT
from civic_console.timestamps import now_utc

logger = logging.getLogger(__name__)


def department_for(issue_type: Optional[str]) -> str:
    return ISSUE_DEPARTMENT.get(issue_type or "", "general")


def send_email(to_email: str, subject: str, body: str) -> bool:
    """Send a plain-text email; returns False when SMTP is not configured."""
    if not settings.SMTP_HOST or not settings.SMTP_USER:
        logger.info("Email not configured; would send %r to %s", subject, to_email)
        return False

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = settings.FROM_EMAIL
    msg["To"] = to_email
    msg.attach(MIMEText(body, "plain"))

    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT) as server:
        server.starttls()
        if settings.SMTP_PASSWORD:
            server.login(settings.SMTP_USER, settings.SMTP_PASSWORD)
        server.sendmail(settings.FROM_EMAIL, [to_email], msg.as_string())
    return True


class NotificationDispatcher:
    def __init__(self, store: ReportStore, mailer=send_email):
        self.store = store
        self.mailer = mailer

    def on_report_created(self, report_id: str, doc: Dict[str, Any]) -> Optional[str]:
        """Route a new report to the department matching its issue type."""
        if doc.get("assignedDept") or not doc.get("issueType"):
            return None
        dept = department_for(doc.get("issueType"))
        if self.store.atomic_update(report_id, {"assignedDept": dept, "updatedAt": now_utc()}):
            logger.info("Auto-assigned report %s to department: %s", report_id, dept)
            return dept
        logger.error("Auto-assign failed: report %s not found", report_id)
        return None

    def on_report_updated(self, before: Optional[Dict[str, Any]], after: Optional[Dict[str, Any]]) -> None:
        if not before or not after:
            return
        report_id = after.get("id")
        assignee = after.get("assignedTo")
        if assignee and before.get("assignedTo") != assignee:
            self._notify_assignee(report_id, assignee, after)
        if before.get("status") != "resolved" and after.get("status") == "resolved":
            self._notify_reporter(report_id, after)

    def _notify_assignee(self, report_id: str, assignee: str, report: Dict[str, Any]) -> None:
        logger.info("Report %s assigned to supervisor: %s", report_id, assignee)
        supervisor = self.store.get_document(settings.SUPERVISORS_COLLECTION, assignee)
        if not supervisor:
            return
        if supervisor.get("fcmToken"):
            # push delivery is owned by the mobile backend; record the intent
            logger.info("Push notification queued for supervisor %s (report %s)", assignee, report_id)
        if supervisor.get("email"):
            self._send(
                supervisor["email"],
                "New Report Assigned",
                f"You have been assigned a new {report.get('issueType')} report: {report.get('issueLabel')}",
            )

    def _notify_reporter(self, report_id: str, report: Dict[str, Any]) -> None:
        logger.info("Report %s has been resolved", report_id)
        reporter = self.store.get_document(settings.USERS_COLLECTION, report.get("uid") or "")
        if reporter and reporter.get("email"):
            self._send(reporter["email"], "Your report has been resolved",
                       f"Your report \"{report.get('issueLabel') or report_id}\" has been marked resolved.")

    def _send(self, to_email: str, subject: str, body: str) -> None:
        try:
            self.mailer(to_email, subject, body)
        except (smtplib.SMTPException, OSError) as e:
            logger.error("Error sending notification to %s: %s", to_email, e)
