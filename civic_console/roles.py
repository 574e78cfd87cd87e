"""
Identity and role resolution.

Sign-in checks the users collection; the role is looked up afterwards from
the admins registry and then the supervisors registry. A signed-in identity
found in neither has no role and is denied access until an operator grants
one (see civic_console.provision).
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

from jose import JWTError, jwt
from passlib.context import CryptContext

from civic_console import settings
from civic_console.database import ReportQuery, ReportStore
from civic_console.exceptions import AuthenticationError, AuthorizationError
from civic_console.schemas import Identity, Principal, Report, User

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

AuthCallback = Callable[[Optional[Principal]], None]


# ---------- Tokens ----------

def create_token(identity: Identity) -> str:
    now = datetime.now(timezone.utc)
    payload = {
        "sub": identity.uid,
        "email": identity.email,
        "exp": now + timedelta(minutes=settings.JWT_EXPIRE_MINUTES),
        "iat": now,
    }
    if identity.name:
        payload["name"] = identity.name
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def decode_token(token: str) -> Identity:
    try:
        data = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
        return Identity(uid=data["sub"], email=data["email"], name=data.get("name"))
    except (JWTError, KeyError, ValueError):
        raise AuthenticationError("Invalid or expired token")


# ---------- Identity provider ----------

class IdentityProvider:
    """Email/password sign-in backed by the users collection."""

    def __init__(self, store: ReportStore):
        self.store = store
        self._current: Optional[Identity] = None
        self._listeners: Dict[int, Callable[[Optional[Identity]], None]] = {}
        self._next = 0

    @property
    def current(self) -> Optional[Identity]:
        return self._current

    def register(self, email: str, password: str, name: Optional[str] = None) -> Identity:
        if self.store.get_documents(settings.USERS_COLLECTION, {"email": email}, 1):
            raise AuthenticationError("Email already registered", code="CC_EMAIL_TAKEN")
        uid = uuid.uuid4().hex
        user = User(uid=uid, email=email, name=name, password_hash=pwd_context.hash(password))
        self.store.set_document(settings.USERS_COLLECTION, uid, user.model_dump())
        logger.info("Registered identity %s", uid)
        return Identity(uid=uid, email=email, name=name)

    def authenticate(self, email: str, password: str) -> Identity:
        """Check credentials without touching the session state."""
        found = self.store.get_documents(settings.USERS_COLLECTION, {"email": email}, 1)
        user = found[0] if found else None
        if not user or not user.get("password_hash") or not pwd_context.verify(password, user["password_hash"]):
            raise AuthenticationError("Invalid credentials")
        if not user.get("is_active", True):
            raise AuthenticationError("Account disabled", code="CC_ACCOUNT_DISABLED")
        return Identity(uid=user.get("uid") or user["id"], email=user["email"], name=user.get("name"))

    def sign_in(self, email: str, password: str) -> Identity:
        identity = self.authenticate(email, password)
        self._set(identity)
        return identity

    def sign_out(self) -> None:
        self._set(None)

    def on_auth_change(self, callback: Callable[[Optional[Identity]], None]) -> Callable[[], None]:
        """Call back with the current identity now and on every change."""
        key = self._next
        self._next += 1
        self._listeners[key] = callback
        callback(self._current)
        return lambda: self._listeners.pop(key, None)

    def _set(self, identity: Optional[Identity]) -> None:
        self._current = identity
        for callback in list(self._listeners.values()):
            callback(identity)


# ---------- Role lookup ----------

class RoleResolver:
    def __init__(self, store: ReportStore):
        self.store = store

    def resolve(self, identity: Identity) -> Principal:
        admin = self.store.get_document(settings.ADMINS_COLLECTION, identity.uid)
        if admin is not None:
            return Principal(
                uid=identity.uid,
                email=identity.email,
                role="admin",
                name=admin.get("name") or identity.name,
            )

        supervisor = self.store.get_document(settings.SUPERVISORS_COLLECTION, identity.uid)
        if supervisor is not None and supervisor.get("dept"):
            return Principal(
                uid=identity.uid,
                email=identity.email,
                role="supervisor",
                dept=supervisor["dept"],
                name=supervisor.get("name") or identity.name,
            )
        if supervisor is not None:
            logger.warning("Supervisor %s has no department; treating as no role", identity.uid)

        return Principal(uid=identity.uid, email=identity.email, role=None, name=identity.name)


class AuthState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    UNRESOLVED = "unresolved"
    ADMIN = "admin"
    SUPERVISOR = "supervisor"
    NO_ROLE = "no_role"


class AuthSession:
    """
    Tracks one console session through sign-in and role lookup.

    Listeners registered with on_change receive the resolved principal, or
    None while signed out.
    """

    def __init__(self, provider: IdentityProvider, resolver: RoleResolver):
        self.provider = provider
        self.resolver = resolver
        self.state = AuthState.UNAUTHENTICATED
        self.principal: Optional[Principal] = None
        self.error: Optional[str] = None
        self._listeners: List[AuthCallback] = []
        self._unsubscribe = provider.on_auth_change(self._handle_identity)

    def on_change(self, callback: AuthCallback) -> Callable[[], None]:
        self._listeners.append(callback)
        callback(self.principal)

        def _unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _unsubscribe

    def login(self, email: str, password: str) -> Optional[Principal]:
        self.error = None
        try:
            self.provider.sign_in(email, password)
        except AuthenticationError as e:
            self.error = e.message
            raise
        return self.principal

    def logout(self) -> None:
        self.provider.sign_out()

    def close(self) -> None:
        self._unsubscribe()

    def _handle_identity(self, identity: Optional[Identity]) -> None:
        if identity is None:
            self.state = AuthState.UNAUTHENTICATED
            self.principal = None
        else:
            self.state = AuthState.UNRESOLVED
            self.principal = self.resolver.resolve(identity)
            self.state = {
                "admin": AuthState.ADMIN,
                "supervisor": AuthState.SUPERVISOR,
            }.get(self.principal.role, AuthState.NO_ROLE)
        for callback in list(self._listeners):
            callback(self.principal)


# ---------- Access checks ----------

def require_role(principal: Optional[Principal], role: str) -> Principal:
    if principal is None:
        raise AuthorizationError("User not authenticated", code="CC_NOT_AUTHENTICATED")
    if principal.role != role:
        logger.warning("Denied %s access to %s (role=%s)", role, principal.uid, principal.role)
        raise AuthorizationError(f"Unauthorized: {role} role required", details={"role": principal.role})
    return principal


def supervisor_query(principal: Principal) -> ReportQuery:
    """Reports in a supervisor's department or assigned to them directly."""
    require_role(principal, "supervisor")
    return ReportQuery(any_of=(("assignedDept", principal.dept), ("assignedTo", principal.uid)))


def in_supervisor_scope(principal: Principal, report: Report) -> bool:
    if principal.role != "supervisor":
        return False
    return report.assignedDept == principal.dept or report.assignedTo == principal.uid
