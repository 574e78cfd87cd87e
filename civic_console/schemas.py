"""
Document and view schemas for the console.

Report documents live in the "reports" collection and keep the field names
the citizen client writes (issueType, assignedDept, statusHistory, ...).
Timestamp fields keep their raw stored value; read them with
civic_console.timestamps.to_instant.
"""

import logging
import math
from datetime import date
from typing import Any, Dict, Iterable, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, ValidationError, model_validator

logger = logging.getLogger(__name__)

IssueType = Literal["water", "road", "electricity", "sanitation", "other"]
ReportStatus = Literal["submitted", "acknowledged", "in_progress", "resolved"]
Department = Literal["water", "roads", "electricity", "sanitation", "general"]
Role = Literal["admin", "supervisor"]
HistoryKind = Literal["status", "classification", "note"]
DateRange = Literal["all", "today", "week", "month", "quarter", "year"]

REPORT_STATUSES: tuple = ReportStatus.__args__
DEPARTMENTS: tuple = Department.__args__

ISSUE_DEPARTMENT = {
    "water": "water",
    "road": "roads",
    "electricity": "electricity",
    "sanitation": "sanitation",
    "other": "general",
}


# ---------- Report ----------

def _coordinate(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _usable_location(value: Any) -> bool:
    """Whether a stored location carries both coordinates as numbers."""
    if isinstance(value, GeoPoint):
        return True
    if not isinstance(value, dict):
        return False
    lat = value.get("latitude", value.get("lat"))
    lng = value.get("longitude", value.get("lng"))
    return _coordinate(lat) is not None and _coordinate(lng) is not None


class GeoPoint(BaseModel):
    latitude: float
    longitude: float

    @model_validator(mode="before")
    @classmethod
    def _accept_short_keys(cls, data: Any) -> Any:
        if isinstance(data, dict) and "latitude" not in data and "lat" in data:
            return {"latitude": data.get("lat"), "longitude": data.get("lng")}
        return data


class StatusHistoryEntry(BaseModel):
    model_config = ConfigDict(extra="ignore")

    kind: HistoryKind = Field(..., description="Which top-level field the entry records")
    status: Optional[str] = None
    classification: Optional[str] = None
    note: str = Field("", description="Free-text note, empty when none given")
    changedBy: str = Field(..., description="uid of the acting principal")
    changedAt: Any = Field(None, description="When the change was applied")

    @model_validator(mode="before")
    @classmethod
    def _infer_legacy_kind(cls, data: Any) -> Any:
        # older entries were written without a kind tag
        if isinstance(data, dict) and not data.get("kind"):
            data = dict(data)
            if data.get("status"):
                data["kind"] = "status"
            elif data.get("classification"):
                data["kind"] = "classification"
            else:
                data["kind"] = "note"
        if isinstance(data, dict) and data.get("note") is None:
            data = {**data, "note": ""}
        return data


class Report(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str = Field(..., description="Store-assigned document id")
    uid: str = Field("", description="Reporter uid")
    description: str = Field("", description="Issue description")
    issueType: IssueType = Field("other", description="Issue category")
    issueLabel: str = Field("", description="Display label for the issue")
    customIssue: Optional[str] = None
    classification: Optional[str] = None
    classificationNote: Optional[str] = None
    imageUrl: Optional[str] = None
    audioUrl: Optional[str] = None
    location: Optional[GeoPoint] = None
    status: ReportStatus = "submitted"
    assignedDept: Optional[str] = None
    assignedTo: Optional[str] = None
    department: Optional[str] = Field(None, description="Legacy department field")
    statusHistory: List[StatusHistoryEntry] = Field(default_factory=list)
    createdAt: Any = None
    updatedAt: Any = None

    @model_validator(mode="before")
    @classmethod
    def _fill_defaults(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "id" not in data and "_id" in data:
            data["id"] = str(data["_id"])
        if not data.get("issueType"):
            data["issueType"] = "other"
        if data.get("statusHistory") is None:
            data["statusHistory"] = []
        if data.get("location") is not None and not _usable_location(data["location"]):
            # partial locations ({"lat": null, ...}) read as no location
            data["location"] = None
        for key in ("uid", "description", "issueLabel"):
            if data.get(key) is None:
                data[key] = ""
        return data

    @property
    def effective_department(self) -> str:
        return self.assignedDept or self.department or ""


def parse_report(doc: Dict[str, Any]) -> Optional[Report]:
    try:
        return Report.model_validate(doc)
    except ValidationError as exc:
        logger.warning("Skipping malformed report %s: %s", doc.get("id", doc.get("_id")), exc.errors()[:3])
        return None


def parse_reports(docs: Iterable[Dict[str, Any]]) -> List[Report]:
    """Validate raw documents, dropping the ones that do not fit the model."""
    out = []
    for doc in docs:
        report = parse_report(doc)
        if report is not None:
            out.append(report)
    return out


class NewReport(BaseModel):
    """Payload the citizen client posts when a report is created."""
    description: str = Field(..., description="Issue description")
    issueType: IssueType = Field("other")
    issueLabel: str = Field("", description="Display label")
    customIssue: Optional[str] = None
    location: Optional[GeoPoint] = None
    imageUrl: Optional[str] = None
    audioUrl: Optional[str] = None
    createdAt: Optional[Any] = Field(None, description="Client timestamp (ms or ISO), server time when absent")


# ---------- Principals ----------

class Identity(BaseModel):
    """An authenticated identity before its role has been looked up."""
    uid: str
    email: EmailStr
    name: Optional[str] = None


class Principal(BaseModel):
    model_config = ConfigDict(frozen=True)

    uid: str
    email: EmailStr
    role: Optional[Role] = None
    dept: Optional[Department] = None
    name: Optional[str] = None

    @model_validator(mode="after")
    def _supervisor_needs_dept(self):
        if self.role == "supervisor" and not self.dept:
            raise ValueError("supervisor principals require a department")
        return self


class User(BaseModel):
    """Identity record in the users collection."""
    uid: str = Field(..., description="Stable identity id")
    email: EmailStr = Field(..., description="Email address")
    name: Optional[str] = Field(None, description="Display name")
    password_hash: str = Field(..., description="Hashed password")
    is_active: bool = Field(True, description="Whether the account may sign in")


class AdminRecord(BaseModel):
    role: Literal["superadmin", "admin"] = "admin"
    name: Optional[str] = None
    email: Optional[EmailStr] = None


class SupervisorRecord(BaseModel):
    name: str
    email: EmailStr
    dept: Department
    phone: Optional[str] = None
    fcmToken: Optional[str] = None


# ---------- Filters ----------

class FilterConfig(BaseModel):
    """Axes shared by every view. "all", "" and None match everything."""
    model_config = ConfigDict(frozen=True)

    dateRange: Optional[DateRange] = None
    issueType: Optional[Literal["all", "water", "road", "electricity", "sanitation", "other"]] = None
    status: Optional[Literal["all", "submitted", "acknowledged", "in_progress", "resolved"]] = None
    department: Optional[str] = None

    require_location: bool = False
    search: Optional[str] = None


class ReportFilters(FilterConfig):
    """Reports table: adds free-text search."""


class MapFilters(FilterConfig):
    require_location: bool = True


class AnalyticsFilters(FilterConfig):
    pass


class SupervisorFilters(FilterConfig):
    pass


# ---------- Derived views ----------

class LocationCluster(BaseModel):
    lat: float
    lng: float
    count: int
    topIssueType: str
    reportIds: List[str] = Field(default_factory=list)


class DailyPoint(BaseModel):
    day: date
    label: str
    count: int = 0
    avgResolutionHours: Optional[float] = None


class DashboardStats(BaseModel):
    total: int = 0
    open: int = 0
    last7Days: int = 0
    today: int = 0
    avgResolutionHours: int = 0


class SupervisorStats(BaseModel):
    total: int = 0
    open: int = 0
    overdue: int = 0
    today: int = 0
    acknowledged: int = 0
    inProgress: int = 0


class AnalyticsSnapshot(BaseModel):
    totalReports: int = 0
    resolvedReports: int = 0
    resolutionRate: int = 0
    avgResolutionHours: int = 0
    reportsWithLocation: int = 0
    locationShare: int = 0
    statusDistribution: Dict[str, int] = Field(default_factory=dict)
    issueTypeDistribution: Dict[str, int] = Field(default_factory=dict)
    topLocations: List[LocationCluster] = Field(default_factory=list)
    submissions: List[DailyPoint] = Field(default_factory=list)
    resolutionTimes: List[DailyPoint] = Field(default_factory=list)
