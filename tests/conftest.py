"""Shared test fixtures."""
import asyncio
import copy
import re
from datetime import datetime
from typing import Dict, List, Optional, Tuple, Union
from urllib.parse import unquote

import httpx
import pytest
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

# Import all models so SQLModel.metadata knows about them
from acusync.models.record import Application, Attachment, CanonicalRecord  # noqa: F401
from acusync.models.sync import ChangeLogEntry, RemoteSession, SyncJob  # noqa: F401
from acusync.acumatica.mapping import to_datetime
from acusync.config import Settings


@pytest.fixture(name="engine")
def engine_fixture():
    """In-memory SQLite engine. Tables recreated fresh for each test."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    SQLModel.metadata.drop_all(engine)


@pytest.fixture(name="test_session")
def test_session_fixture(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture(name="settings")
def settings_fixture(tmp_path):
    return Settings(
        acumatica_url="acme.acumatica.test",
        acumatica_username="sync-bot",
        acumatica_password="s3cret",
        acumatica_company="Acme",
        attachments_dir=str(tmp_path / "attachments"),
        retry_base_delay_seconds=0.0,
        page_size=5,
        sync_time_budget_seconds=30.0,
    )


# ─── Fake Acumatica ───────────────────────────────────────────────────────────

_WINDOW = re.compile(r"(\w+) ge datetimeoffset'([^']+)' and \w+ le datetimeoffset'([^']+)'")
_EXCLUDED = re.compile(r"Type ne '([^']+)'")


def _wrap(value):
    return {"value": value}


class FakeAcumatica:
    """
    Minimal contract API served through httpx.MockTransport.

    Tracks logins and logouts, rejects cookies it didn't issue (or has
    forgotten via drop_sessions), and answers windowed list requests by
    actually evaluating the ge/le/ne filter.
    """

    def __init__(self):
        self.entities: Dict[str, Dict[Tuple[str, str], dict]] = {"Payment": {}, "Invoice": {}}
        self.files: Dict[str, bytes] = {}
        self.valid_cookies: set = set()
        self.logins = 0
        self.logouts = 0
        self.login_status = 204
        self.login_body = ""
        self.queued: List[Union[httpx.Response, Exception]] = []  # served before normal routing
        self.requests: List[httpx.Request] = []

    # ── Data setup ────────────────────────────────────────────────────────────

    def add_payment(
        self,
        ref: str,
        date: str,
        *,
        doc_type: str = "Payment",
        status: str = "Closed",
        amount: float = 100.0,
        customer: str = "C000123",
        applications: Optional[List[dict]] = None,
        files: Optional[List[dict]] = None,
    ) -> dict:
        raw = {
            "id": f"pay-{doc_type}-{ref}",
            "ReferenceNbr": _wrap(ref),
            "Type": _wrap(doc_type),
            "Status": _wrap(status),
            "Hold": _wrap(False),
            "ApplicationDate": _wrap(f"{date}T00:00:00-05:00"),
            "PaymentAmount": _wrap(amount),
            "UnappliedBalance": _wrap(0.0),
            "CustomerID": _wrap(customer),
            "CustomerName": _wrap("Northwind Traders"),
            "CurrencyID": _wrap("USD"),
            "LastModifiedDateTime": _wrap(f"{date}T09:30:00.113-05:00"),
            "ApplicationHistory": applications or [],
            "files": files or [],
        }
        self.entities["Payment"][(doc_type, ref)] = raw
        return raw

    def add_invoice(self, ref: str, date: str, *, doc_type: str = "Invoice", status: str = "Open", amount: float = 150.0) -> dict:
        raw = {
            "id": f"inv-{ref}",
            "ReferenceNbr": _wrap(ref),
            "Type": _wrap(doc_type),
            "Status": _wrap(status),
            "Date": _wrap(f"{date}T00:00:00-05:00"),
            "Amount": _wrap(amount),
            "Balance": _wrap(amount),
            "Customer": _wrap("C000123"),
            "LastModifiedDateTime": _wrap(f"{date}T10:00:00-05:00"),
            "files": [],
        }
        self.entities["Invoice"][(doc_type, ref)] = raw
        return raw

    def add_file(self, raw: dict, file_id: str, filename: str, content: bytes) -> None:
        raw.setdefault("files", []).append({"id": file_id, "filename": filename})
        self.files[file_id] = content

    def move_payment(self, ref: str, date: str, doc_type: str = "Payment") -> None:
        self.entities["Payment"][(doc_type, ref)]["ApplicationDate"] = _wrap(f"{date}T00:00:00-05:00")

    def drop_sessions(self) -> None:
        """Forget every issued cookie, as Acumatica does on an app pool recycle."""
        self.valid_cookies.clear()

    # ── Transport ─────────────────────────────────────────────────────────────

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = unquote(request.url.raw_path.decode().split("?")[0])

        if path == "/entity/auth/login":
            return self._login(request)
        if path == "/entity/auth/logout":
            self.logouts += 1
            self.valid_cookies.discard(request.headers.get("cookie", ""))
            return httpx.Response(204)

        if request.headers.get("cookie", "") not in self.valid_cookies:
            return httpx.Response(401, json={"message": "You are not logged in."})
        if self.queued:
            item = self.queued.pop(0)
            if isinstance(item, Exception):
                raise item
            return item

        if path.endswith("/Frames/GetFile.ashx"):
            file_id = request.url.params.get("fileID")
            if file_id not in self.files:
                return httpx.Response(404, text="File not found")
            return httpx.Response(200, content=self.files[file_id], headers={"content-type": "image/jpeg"})

        parts = path.split("/")[4:]  # after /entity/Default/{version}/
        endpoint, key = parts[0], parts[1:]
        if key:
            raw = self.entities[endpoint].get(tuple(key))
            if raw is None:
                return httpx.Response(500, json={"exceptionMessage": "No entity satisfies the condition."})
            return httpx.Response(200, json=raw)
        return self._list(endpoint, request)

    def _login(self, request: httpx.Request) -> httpx.Response:
        if self.login_status >= 400:
            return httpx.Response(self.login_status, text=self.login_body)
        self.logins += 1
        token = f".ASPXAUTH=token{self.logins}"
        self.valid_cookies.add(f"{token}; ASP.NET_SessionId=sess{self.logins}")
        return httpx.Response(
            204,
            headers=[
                ("set-cookie", f"{token}; path=/; secure; HttpOnly"),
                ("set-cookie", f"ASP.NET_SessionId=sess{self.logins}; path=/; HttpOnly"),
            ],
        )

    def _list(self, endpoint: str, request: httpx.Request) -> httpx.Response:
        rows = list(self.entities[endpoint].values())
        filter_expr = request.url.params.get("$filter", "")
        window = _WINDOW.search(filter_expr)
        if window:
            field, start, end = window.group(1), datetime.fromisoformat(window.group(2)), datetime.fromisoformat(window.group(3))
            rows = [r for r in rows if start <= to_datetime(r[field]["value"]) <= end]
        excluded = set(_EXCLUDED.findall(filter_expr))
        rows = [r for r in rows if r["Type"]["value"] not in excluded]
        rows.sort(key=lambda r: (r["ReferenceNbr"]["value"], r["Type"]["value"]))
        skip = int(request.url.params.get("$skip", 0))
        top = int(request.url.params.get("$top", len(rows) or 1))
        page = [
            {k: v for k, v in copy.deepcopy(r).items() if k not in ("ApplicationHistory", "files")}
            for r in rows[skip:skip + top]
        ]
        return httpx.Response(200, json=page)


@pytest.fixture(name="acumatica")
def acumatica_fixture():
    return FakeAcumatica()


@pytest.fixture(name="http")
async def http_fixture(acumatica):
    async with httpx.AsyncClient(transport=acumatica.transport()) as client:
        yield client


@pytest.fixture(name="sync_engine")
async def sync_engine_fixture(settings, engine, http):
    from acusync.engine import SyncEngine

    sync_engine = SyncEngine(settings, db_engine=engine, http=http)
    yield sync_engine
    tasks = list(sync_engine._tasks)
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
