"""
Acumatica API session management with database persistence.

Acumatica's contract API authenticates with a cookie obtained from
``POST /entity/auth/login``. Every login occupies one of a small number of
concurrent API login slots on the tenant; when they run out the login
response says so ("concurrent API logins" / "API Login Limit") and nothing
works until sessions are released. So we log in as rarely as possible:

    - the cookie is cached in the ``remotesession`` table and reused by every
      worker until it expires client-side (default 25 min, five minutes
      before Acumatica's own 30 minute idle timeout);
    - exactly one session is current; rotation invalidates older rows
      (``is_valid=False``) but keeps them for audit;
    - acquire and invalidate run under one asyncio.Lock, so workers racing
      to refresh an expired session produce one login and share its result.

When a request is rejected mid-sync (401/403) the caller asks for
``force_new``: every cached session is logged out (best effort) and
invalidated before a fresh login.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

import httpx
from sqlmodel import Session, select

from acusync.acumatica.retry import RetryPolicy
from acusync.config import Settings
from acusync.errors import AuthenticationFailed, LoginLimitReached, TransientRemoteError
from acusync.models.sync import RemoteSession

logger = logging.getLogger(__name__)

# ── Constants ─────────────────────────────────────────────────────────────────

LOGIN_PATH = "/entity/auth/login"
LOGOUT_PATH = "/entity/auth/logout"
LOGIN_LIMIT_MARKERS = ("concurrent API logins", "API Login Limit")


# ── Credentials ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Credentials:
    url: str
    username: str
    password: str = field(repr=False)
    company: str = ""
    branch: str = ""

    @classmethod
    def from_settings(cls, settings: Settings) -> "Credentials":
        return cls(
            url=normalize_base_url(settings.acumatica_url),
            username=settings.acumatica_username,
            password=settings.acumatica_password,
            company=settings.acumatica_company,
            branch=settings.acumatica_branch,
        )

    def login_body(self) -> dict:
        body = {"name": self.username, "password": self.password}
        if self.company:
            body["company"] = self.company
        if self.branch:
            body["branch"] = self.branch
        return body


def normalize_base_url(url: str) -> str:
    """Add https:// when the configured instance URL has no scheme."""
    url = url.strip().rstrip("/")
    if url and not url.startswith(("http://", "https://")):
        url = f"https://{url}"
    return url


def parse_set_cookie(headers: List[str]) -> str:
    """Join the name=value part of each Set-Cookie header into one Cookie value."""
    parts = []
    for header in headers:
        pair = header.split(";", 1)[0].strip()
        if pair and "=" in pair:
            parts.append(pair)
    return "; ".join(parts)


@dataclass
class LogoutReport:
    total_sessions: int = 0
    logged_out: int = 0
    failed: int = 0
    invalidated: int = 0


# ── Main class ────────────────────────────────────────────────────────────────

class SessionManager:
    """
    Shared cache of the current Acumatica session.

    Usage:
        manager = SessionManager(engine, http_client, ttl_minutes=25)
        session = await manager.acquire(credentials)
        ...request with Cookie: session.cookie...
        session = await manager.acquire(credentials, force_new=True, replacing=session)
    """

    def __init__(
        self,
        engine,
        http: httpx.AsyncClient,
        *,
        ttl_minutes: int = 25,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.engine = engine
        self._http = http
        self._ttl = timedelta(minutes=ttl_minutes)
        self._retry = retry_policy or RetryPolicy()
        self._lock = asyncio.Lock()

    # ── Public API ────────────────────────────────────────────────────────────

    async def acquire(
        self,
        credentials: Credentials,
        *,
        force_new: bool = False,
        replacing: Optional[RemoteSession] = None,
    ) -> RemoteSession:
        """
        Return a usable session, logging in only when no cached one exists.

        Args:
            credentials: Acumatica instance and login.
            force_new: Invalidate every cached session (with logout) first.
            replacing: The session the caller saw rejected. If another worker
                already rotated past it, the newer session is returned
                instead of logging in again.

        Raises:
            AuthenticationFailed: bad credentials or no cookie returned.
            LoginLimitReached: the tenant's concurrent API login ceiling.
            TransientRemoteError: login kept failing with 5xx/network errors.
        """
        async with self._lock:
            current = self._current()
            if force_new:
                if current and replacing is not None and current.id != replacing.id:
                    logger.info("Session already rotated by another worker; reusing %s", current.id)
                    return self._touch(current)
                await self._invalidate_all_locked(credentials, reason="forced rotation")
            elif current:
                return self._touch(current)

            return await self._retry.run(
                lambda: self._login(credentials), description="Acumatica login"
            )

    async def invalidate(self, session: RemoteSession, reason: str = "invalidated") -> None:
        async with self._lock:
            self._mark_invalid([session.id], reason)

    async def invalidate_all(
        self, credentials: Credentials, *, logout: bool = True, reason: str = "forced logout"
    ) -> LogoutReport:
        """Invalidate every cached session, logging each out first unless ``logout`` is False."""
        async with self._lock:
            return await self._invalidate_all_locked(credentials, reason=reason, logout=logout)

    async def logout(self, credentials: Credentials, session: RemoteSession) -> bool:
        """Best-effort logout of one session. Never raises."""
        try:
            response = await self._http.post(
                credentials.url + LOGOUT_PATH, headers={"Cookie": session.cookie}
            )
        except httpx.HTTPError as exc:
            logger.warning("Logout of session %s failed: %s", session.id, exc)
            return False
        if response.status_code >= 400:
            logger.warning("Logout of session %s returned %s", session.id, response.status_code)
            return False
        return True

    # ── Internal helpers ──────────────────────────────────────────────────────

    def _current(self) -> Optional[RemoteSession]:
        now = datetime.utcnow()
        with Session(self.engine) as s:
            return s.exec(
                select(RemoteSession)
                .where(RemoteSession.is_valid == True)  # noqa: E712
                .where(RemoteSession.expires_at > now)
                .order_by(RemoteSession.created_at.desc())
            ).first()

    def _touch(self, session: RemoteSession) -> RemoteSession:
        with Session(self.engine) as s:
            db_session = s.get(RemoteSession, session.id)
            db_session.last_used_at = datetime.utcnow()
            s.add(db_session)
            s.commit()
            s.refresh(db_session)
            return db_session

    def _mark_invalid(self, ids: List[int], reason: str) -> int:
        now = datetime.utcnow()
        count = 0
        with Session(self.engine) as s:
            for session_id in ids:
                db_session = s.get(RemoteSession, session_id)
                if db_session is None or not db_session.is_valid:
                    continue
                db_session.is_valid = False
                db_session.invalidated_at = now
                db_session.invalidation_reason = reason
                s.add(db_session)
                count += 1
            s.commit()
        return count

    async def _invalidate_all_locked(
        self, credentials: Credentials, *, reason: str, logout: bool = True
    ) -> LogoutReport:
        with Session(self.engine) as s:
            sessions = s.exec(
                select(RemoteSession).where(RemoteSession.is_valid == True)  # noqa: E712
            ).all()

        report = LogoutReport(total_sessions=len(sessions))
        if logout:
            for session in sessions:
                if await self.logout(credentials, session):
                    report.logged_out += 1
                else:
                    report.failed += 1
        report.invalidated = self._mark_invalid([x.id for x in sessions], reason)
        if sessions:
            logger.info(
                "Invalidated %d Acumatica sessions (%d logged out, %d logout failures)",
                report.invalidated, report.logged_out, report.failed,
            )
        return report

    async def _login(self, credentials: Credentials) -> RemoteSession:
        self._mark_expired()
        logger.info("Logging in to Acumatica at %s", credentials.url)
        try:
            response = await self._http.post(
                credentials.url + LOGIN_PATH, json=credentials.login_body()
            )
        except httpx.TimeoutException as exc:
            raise TransientRemoteError(f"Login timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientRemoteError(f"Login request failed: {exc}") from exc

        if response.status_code >= 400:
            text = response.text
            if any(marker in text for marker in LOGIN_LIMIT_MARKERS):
                raise LoginLimitReached(text[:500])
            if response.status_code >= 500:
                raise TransientRemoteError(
                    f"Login failed with {response.status_code}: {text[:500]}",
                    response.status_code,
                )
            raise AuthenticationFailed(f"Authentication failed ({response.status_code}): {text[:500]}")

        cookie = parse_set_cookie(response.headers.get_list("set-cookie"))
        if not cookie:
            raise AuthenticationFailed("No session cookie received from Acumatica")
        # Cookies travel explicitly per request; keep the shared client's jar empty
        self._http.cookies.clear()

        now = datetime.utcnow()
        session = RemoteSession(cookie=cookie, expires_at=now + self._ttl, created_at=now, last_used_at=now)
        with Session(self.engine) as s:
            s.add(session)
            s.commit()
            s.refresh(session)
        logger.info("New Acumatica session %s cached until %s", session.id, session.expires_at.isoformat())
        return session

    def _mark_expired(self) -> None:
        now = datetime.utcnow()
        with Session(self.engine) as s:
            expired = s.exec(
                select(RemoteSession)
                .where(RemoteSession.is_valid == True)  # noqa: E712
                .where(RemoteSession.expires_at <= now)
            ).all()
        if expired:
            self._mark_invalid([x.id for x in expired], "expired")
