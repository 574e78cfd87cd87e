import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Type

from fastapi import BackgroundTasks, Depends, FastAPI, Header, HTTPException, Query, WebSocket
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, EmailStr, ValidationError

from civic_console import settings
from civic_console.analytics import analytics_snapshot, dashboard_stats, location_clusters, supervisor_stats
from civic_console.database import ReportQuery, ReportStore, get_store
from civic_console.exceptions import (
    AuthenticationError,
    AuthorizationError,
    ConsoleError,
    InvalidValueError,
    MalformedTimestamp,
    ReportNotFound,
    SubscriptionError,
)
from civic_console.exports import export_filename, reports_to_csv
from civic_console.filters import apply_preset, filter_reports
from civic_console.lifecycle import LifecycleService
from civic_console.notifications import NotificationDispatcher
from civic_console.roles import (
    IdentityProvider,
    RoleResolver,
    create_token,
    decode_token,
    in_supervisor_scope,
    require_role,
    supervisor_query,
)
from civic_console.schemas import (
    AnalyticsFilters,
    Department,
    FilterConfig,
    Identity,
    MapFilters,
    NewReport,
    Principal,
    Report,
    ReportFilters,
    ReportStatus,
    SupervisorFilters,
    parse_report,
    parse_reports,
)
from civic_console.timestamps import require_instant
from civic_console.views import ReportView


# ---------- Logging ----------

class JSONFormatter(logging.Formatter):
    """JSON log formatter for structured logging."""

    def format(self, record):
        log_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if hasattr(record, "report_id"):
            log_entry["report_id"] = record.report_id
        if hasattr(record, "uid"):
            log_entry["uid"] = record.uid
        return json.dumps(log_entry)


logger = logging.getLogger("civic_console")
logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))
if not logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logger.addHandler(handler)


store = get_store()

app = FastAPI(title=settings.APP_NAME)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ERROR_STATUS = [
    (AuthenticationError, 401),
    (AuthorizationError, 403),
    (ReportNotFound, 404),
    (InvalidValueError, 422),
    (MalformedTimestamp, 422),
    (SubscriptionError, 503),
]


@app.exception_handler(ConsoleError)
async def console_error_handler(request, exc: ConsoleError):
    status_code = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 500)
    return JSONResponse(status_code=status_code, content={"detail": exc.to_dict()})


# ---------- Dependencies ----------

def get_report_store() -> ReportStore:
    return store


def get_notifier(db: ReportStore = Depends(get_report_store)) -> NotificationDispatcher:
    return NotificationDispatcher(db)


def verify_token(authorization: Optional[str] = Header(None)) -> Identity:
    if not authorization:
        raise AuthenticationError("Missing Authorization header", code="CC_NOT_AUTHENTICATED")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise AuthenticationError("Invalid auth scheme")
    return decode_token(token)


def current_principal(identity: Identity = Depends(verify_token),
                      db: ReportStore = Depends(get_report_store)) -> Principal:
    return RoleResolver(db).resolve(identity)


def admin_principal(principal: Principal = Depends(current_principal)) -> Principal:
    return require_role(principal, "admin")


def supervisor_principal(principal: Principal = Depends(current_principal)) -> Principal:
    return require_role(principal, "supervisor")


def _build(cls: Type[FilterConfig], **params) -> FilterConfig:
    params = {k: v for k, v in params.items() if v != ""}
    try:
        return cls(**params)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))


def _snapshot(db: ReportStore, query: ReportQuery) -> List[Report]:
    return parse_reports(db.find_reports(query))


def _admin_reports(db: ReportStore) -> List[Report]:
    return _snapshot(db, ReportQuery(limit=settings.REPORT_LIST_LIMIT))


def _supervisor_reports(db: ReportStore, principal: Principal) -> List[Report]:
    return [r for r in _snapshot(db, supervisor_query(principal)) if in_supervisor_scope(principal, r)]


def _existing(db: ReportStore, report_id: str) -> Dict[str, Any]:
    doc = db.get_document(settings.REPORTS_COLLECTION, report_id)
    if doc is None:
        raise ReportNotFound("Report not found", report_id=report_id)
    return doc


# ---------- Models for requests ----------

class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ReportStatusUpdate(BaseModel):
    status: ReportStatus
    note: Optional[str] = None


class AssignmentUpdate(BaseModel):
    assignedDept: Optional[Department] = None
    assignedTo: Optional[str] = None


class ClassificationUpdate(BaseModel):
    classification: str
    note: Optional[str] = None


class NoteCreate(BaseModel):
    note: str


# ---------- Basic routes ----------

@app.get("/")
def root():
    return {"message": f"{settings.APP_NAME} running"}


@app.get("/health")
def health(db: ReportStore = Depends(get_report_store)):
    return {"backend": "running", **db.describe()}


# ---------- Auth endpoints ----------

def _user_payload(principal: Principal) -> Dict[str, Any]:
    return principal.model_dump()


@app.post("/auth/register")
def register(req: RegisterRequest, db: ReportStore = Depends(get_report_store)):
    try:
        identity = IdentityProvider(db).register(req.email, req.password, req.name)
    except AuthenticationError as e:
        raise HTTPException(status_code=400, detail=e.message)
    principal = RoleResolver(db).resolve(identity)
    return {"token": create_token(identity), "user": _user_payload(principal)}


@app.post("/auth/login")
def login(req: LoginRequest, db: ReportStore = Depends(get_report_store)):
    identity = IdentityProvider(db).authenticate(req.email, req.password)
    principal = RoleResolver(db).resolve(identity)
    logger.info("Signed in %s as %s", identity.uid, principal.role)
    return {"token": create_token(identity), "user": _user_payload(principal)}


@app.post("/auth/logout")
def logout(identity: Identity = Depends(verify_token)):
    # tokens are stateless; the client drops its copy
    return {"ok": True}


@app.get("/me")
def me(principal: Principal = Depends(current_principal)):
    state = principal.role or "no_role"
    return {**_user_payload(principal), "state": state}


# ---------- Citizen ingestion ----------

@app.post("/reports")
def create_report(report: NewReport, background_tasks: BackgroundTasks,
                  identity: Identity = Depends(verify_token),
                  db: ReportStore = Depends(get_report_store),
                  notifier: NotificationDispatcher = Depends(get_notifier)):
    now = datetime.now(timezone.utc)
    created = require_instant(report.createdAt, "createdAt") if report.createdAt is not None else now
    data = report.model_dump()
    data.update({
        "uid": identity.uid,
        "status": "submitted",
        "statusHistory": [],
        "createdAt": created,
        "updatedAt": now,
    })
    _id = db.create_document(settings.REPORTS_COLLECTION, data)
    background_tasks.add_task(notifier.on_report_created, _id, data)
    return {"id": _id, **jsonable_encoder(data)}


# ---------- Admin views ----------

@app.get("/admin/reports")
def list_reports(filter: Optional[str] = None,
                 search: Optional[str] = None,
                 issueType: Optional[str] = None,
                 status: Optional[str] = None,
                 assignedDept: Optional[str] = None,
                 dateRange: Optional[str] = None,
                 principal: Principal = Depends(admin_principal),
                 db: ReportStore = Depends(get_report_store)):
    config = _build(ReportFilters, search=search, issueType=issueType, status=status,
                    department=assignedDept, dateRange=dateRange)
    config = apply_preset(config, filter)
    reports = _admin_reports(db)
    filtered = filter_reports(reports, config)
    return {"total": len(reports), "count": len(filtered), "reports": filtered}


@app.get("/admin/reports/export")
def export_reports(filter: Optional[str] = None,
                   search: Optional[str] = None,
                   issueType: Optional[str] = None,
                   status: Optional[str] = None,
                   assignedDept: Optional[str] = None,
                   dateRange: Optional[str] = None,
                   principal: Principal = Depends(admin_principal),
                   db: ReportStore = Depends(get_report_store)):
    config = _build(ReportFilters, search=search, issueType=issueType, status=status,
                    department=assignedDept, dateRange=dateRange)
    filtered = filter_reports(_admin_reports(db), apply_preset(config, filter))
    return Response(
        content=reports_to_csv(filtered),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{export_filename()}"'},
    )


@app.get("/admin/reports/{report_id}")
def get_report(report_id: str, principal: Principal = Depends(admin_principal),
               db: ReportStore = Depends(get_report_store)):
    report = parse_report(_existing(db, report_id))
    if report is None:
        raise HTTPException(status_code=422, detail="Report document is malformed")
    reporter = db.get_document(settings.USERS_COLLECTION, report.uid) if report.uid else None
    return {"report": report, "reporterName": (reporter or {}).get("name")}


@app.get("/admin/map")
def map_reports(issueType: Optional[str] = None,
                status: Optional[str] = None,
                dateRange: Optional[str] = None,
                principal: Principal = Depends(admin_principal),
                db: ReportStore = Depends(get_report_store)):
    config = _build(MapFilters, issueType=issueType, status=status, dateRange=dateRange)
    filtered = filter_reports(_admin_reports(db), config)
    return {"count": len(filtered), "reports": filtered, "clusters": location_clusters(filtered)}


@app.get("/admin/analytics")
def analytics(dateRange: Optional[str] = None,
              issueType: Optional[str] = None,
              status: Optional[str] = None,
              department: Optional[str] = None,
              days: int = Query(settings.TREND_DAYS, ge=1, le=366),
              limit: int = Query(settings.TOP_LOCATIONS_LIMIT, ge=1, le=100),
              principal: Principal = Depends(admin_principal),
              db: ReportStore = Depends(get_report_store)):
    config = _build(AnalyticsFilters, dateRange=dateRange, issueType=issueType,
                    status=status, department=department)
    return analytics_snapshot(filter_reports(_admin_reports(db), config), days=days, limit=limit)


@app.get("/admin/stats")
def admin_stats(principal: Principal = Depends(admin_principal),
                db: ReportStore = Depends(get_report_store)):
    return dashboard_stats(_admin_reports(db))


# ---------- Admin mutations ----------

def _mutate(db: ReportStore, notifier: NotificationDispatcher, background_tasks: BackgroundTasks,
            report_id: str, action) -> Dict[str, Any]:
    before = _existing(db, report_id)
    action()
    after = db.get_document(settings.REPORTS_COLLECTION, report_id)
    background_tasks.add_task(notifier.on_report_updated, before, after)
    return {"ok": True}


@app.patch("/admin/reports/{report_id}/status")
def admin_update_status(report_id: str, body: ReportStatusUpdate, background_tasks: BackgroundTasks,
                        principal: Principal = Depends(admin_principal),
                        db: ReportStore = Depends(get_report_store),
                        notifier: NotificationDispatcher = Depends(get_notifier)):
    service = LifecycleService(db)
    return _mutate(db, notifier, background_tasks, report_id,
                   lambda: service.update_status(principal, report_id, body.status, body.note))


@app.patch("/admin/reports/{report_id}/assignment")
def admin_update_assignment(report_id: str, body: AssignmentUpdate, background_tasks: BackgroundTasks,
                            principal: Principal = Depends(admin_principal),
                            db: ReportStore = Depends(get_report_store),
                            notifier: NotificationDispatcher = Depends(get_notifier)):
    if body.assignedDept is None and body.assignedTo is None:
        raise HTTPException(status_code=400, detail="Provide assignedDept and/or assignedTo")
    service = LifecycleService(db)
    return _mutate(db, notifier, background_tasks, report_id,
                   lambda: service.update_assignment(principal, report_id, body.assignedDept, body.assignedTo))


@app.patch("/admin/reports/{report_id}/classification")
def admin_update_classification(report_id: str, body: ClassificationUpdate, background_tasks: BackgroundTasks,
                                principal: Principal = Depends(admin_principal),
                                db: ReportStore = Depends(get_report_store),
                                notifier: NotificationDispatcher = Depends(get_notifier)):
    service = LifecycleService(db)
    return _mutate(db, notifier, background_tasks, report_id,
                   lambda: service.update_classification(principal, report_id, body.classification, body.note))


# ---------- Supervisor ----------

@app.get("/supervisor/reports")
def supervisor_reports(status: Optional[str] = None,
                       dateRange: Optional[str] = None,
                       principal: Principal = Depends(supervisor_principal),
                       db: ReportStore = Depends(get_report_store)):
    config = _build(SupervisorFilters, status=status, dateRange=dateRange)
    reports = _supervisor_reports(db, principal)
    filtered = filter_reports(reports, config)
    return {"total": len(reports), "count": len(filtered), "reports": filtered}


@app.get("/supervisor/stats")
def supervisor_dashboard(principal: Principal = Depends(supervisor_principal),
                         db: ReportStore = Depends(get_report_store)):
    return supervisor_stats(_supervisor_reports(db, principal))


@app.patch("/supervisor/reports/{report_id}/status")
def supervisor_update_status(report_id: str, body: ReportStatusUpdate, background_tasks: BackgroundTasks,
                             principal: Principal = Depends(supervisor_principal),
                             db: ReportStore = Depends(get_report_store),
                             notifier: NotificationDispatcher = Depends(get_notifier)):
    service = LifecycleService(db, supervisor_only=True)
    return _mutate(db, notifier, background_tasks, report_id,
                   lambda: service.update_status(principal, report_id, body.status, body.note))


@app.post("/supervisor/reports/{report_id}/notes")
def supervisor_add_note(report_id: str, body: NoteCreate,
                        principal: Principal = Depends(supervisor_principal),
                        db: ReportStore = Depends(get_report_store)):
    LifecycleService(db, supervisor_only=True).add_note(principal, report_id, body.note)
    return {"ok": True}


# ---------- Live feed ----------

@app.websocket("/ws/reports")
async def live_reports(websocket: WebSocket, token: str = "", db: ReportStore = Depends(get_report_store)):
    try:
        principal = RoleResolver(db).resolve(decode_token(token))
    except AuthenticationError:
        await websocket.close(code=1008)
        return
    if principal.role == "admin":
        query = ReportQuery(limit=settings.REPORT_LIST_LIMIT)
    elif principal.role == "supervisor":
        query = supervisor_query(principal)
    else:
        await websocket.close(code=1008)
        return

    await websocket.accept()
    loop = asyncio.get_running_loop()
    updates: asyncio.Queue = asyncio.Queue()

    view = ReportView(db, query)
    view.on_change(lambda reports: loop.call_soon_threadsafe(updates.put_nowait, reports))
    view.start()

    receiver = asyncio.ensure_future(websocket.receive())
    try:
        while True:
            getter = asyncio.ensure_future(updates.get())
            done, _ = await asyncio.wait({getter, receiver}, return_when=asyncio.FIRST_COMPLETED)
            if receiver in done and receiver.result()["type"] == "websocket.disconnect":
                getter.cancel()
                break
            if getter in done:
                reports = getter.result()
                await websocket.send_json({
                    "count": len(reports),
                    "error": view.error,
                    "reports": jsonable_encoder(reports),
                })
            else:
                getter.cancel()
            if receiver in done:
                receiver = asyncio.ensure_future(websocket.receive())
    finally:
        receiver.cancel()
        view.close()
