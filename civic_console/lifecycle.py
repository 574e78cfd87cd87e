"""
Report lifecycle mutations.

Each operation takes the acting principal explicitly and performs one
atomic store update: top-level fields are set and, where the operation is
audited, a single entry is appended to statusHistory in the same write.
The history array is never read back and rewritten.
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from civic_console import settings
from civic_console.database import ReportStore
from civic_console.exceptions import AuthorizationError, InvalidValueError, ReportNotFound
from civic_console.roles import in_supervisor_scope
from civic_console.schemas import DEPARTMENTS, REPORT_STATUSES, Principal, parse_report
from civic_console.timestamps import now_utc

logger = logging.getLogger(__name__)


class LifecycleService:
    """
    Status, assignment, classification and note changes for reports.

    With supervisor_only=True every operation requires a supervisor
    principal and a report inside that supervisor's scope (their
    department, or assigned to them).
    """

    def __init__(self, store: ReportStore, supervisor_only: bool = False,
                 clock: Callable[[], datetime] = now_utc):
        self.store = store
        self.supervisor_only = supervisor_only
        self.clock = clock

    # ---------- Operations ----------

    def update_status(self, principal: Optional[Principal], report_id: str, status: str,
                      note: Optional[str] = None) -> None:
        self._authorize(principal, report_id, "update report status")
        if status not in REPORT_STATUSES:
            raise InvalidValueError(f"Unknown status '{status}'", details={"allowed": list(REPORT_STATUSES)},
                                    report_id=report_id)
        now = self.clock()
        entry = {
            "kind": "status",
            "status": status,
            "changedBy": principal.uid,
            "changedAt": now,
            "note": note or "",
        }
        self._apply(report_id, {"status": status, "updatedAt": now}, entry)
        logger.info("Report %s status -> %s by %s", report_id, status, principal.uid)

    def update_assignment(self, principal: Optional[Principal], report_id: str,
                          dept: Optional[str] = None, assignee: Optional[str] = None) -> None:
        self._authorize(principal, report_id, "update report assignment")
        if dept is None and assignee is None:
            logger.debug("Assignment update for %s carried no fields; skipping", report_id)
            return
        if dept is not None and dept not in DEPARTMENTS:
            raise InvalidValueError(f"Unknown department '{dept}'", details={"allowed": list(DEPARTMENTS)},
                                    report_id=report_id)

        fields: Dict[str, Any] = {"updatedAt": self.clock()}
        if dept is not None:
            fields["assignedDept"] = dept
        if assignee is not None:
            fields["assignedTo"] = assignee
        self._apply(report_id, fields)
        logger.info("Report %s assigned dept=%s assignee=%s by %s", report_id, dept, assignee, principal.uid)

    def update_classification(self, principal: Optional[Principal], report_id: str, label: str,
                              note: Optional[str] = None) -> None:
        self._authorize(principal, report_id, "classify report")
        if not label or not label.strip():
            raise InvalidValueError("Classification label must not be empty", report_id=report_id)
        now = self.clock()
        entry = {
            "kind": "classification",
            "classification": label,
            "changedBy": principal.uid,
            "changedAt": now,
            "note": note or "",
        }
        fields = {"classification": label, "classificationNote": note or "", "updatedAt": now}
        self._apply(report_id, fields, entry)
        logger.info("Report %s classified as %r by %s", report_id, label, principal.uid)

    def add_note(self, principal: Optional[Principal], report_id: str, note: str) -> None:
        self._authorize(principal, report_id, "add notes", supervisor_only=True)
        if not note or not note.strip():
            raise InvalidValueError("Note must not be empty", report_id=report_id)
        now = self.clock()
        entry = {"kind": "note", "note": note, "changedBy": principal.uid, "changedAt": now}
        self._apply(report_id, {"updatedAt": now}, entry)

    # ---------- Internals ----------

    def _authorize(self, principal: Optional[Principal], report_id: str, action: str,
                   supervisor_only: bool = False) -> None:
        if principal is None:
            logger.warning("Rejected unauthenticated attempt to %s on %s", action, report_id)
            raise AuthorizationError("User not authenticated", code="CC_NOT_AUTHENTICATED", report_id=report_id)

        if not (self.supervisor_only or supervisor_only):
            if principal.role is None:
                logger.warning("Rejected %s on %s: %s has no role", action, report_id, principal.uid)
                raise AuthorizationError(f"Unauthorized: a console role is required to {action}",
                                         report_id=report_id)
            return

        if principal.role != "supervisor":
            logger.warning("Rejected %s on %s: %s is not a supervisor", action, report_id, principal.uid)
            raise AuthorizationError(f"Unauthorized: only supervisors can {action}", report_id=report_id)

        doc = self.store.get_document(settings.REPORTS_COLLECTION, report_id)
        if doc is None:
            raise ReportNotFound("Report not found", report_id=report_id)
        report = parse_report(doc)
        if report is None or not in_supervisor_scope(principal, report):
            logger.warning("Supervisor %s tried to %s outside their scope (%s)", principal.uid, action, report_id)
            raise AuthorizationError("Report is outside your department", code="CC_OUT_OF_SCOPE",
                                     report_id=report_id)

    def _apply(self, report_id: str, fields: Dict[str, Any], entry: Optional[Dict[str, Any]] = None) -> None:
        if not self.store.atomic_update(report_id, fields, entry):
            raise ReportNotFound("Report not found", report_id=report_id)
