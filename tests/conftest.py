"""
Test configuration and fixtures.

Provides:
- In-memory SQLite database built from the ORM metadata (rows wiped after each test)
- A fake Gmail mailbox standing in for the REST client
- A job-draining helper that runs queued work through the real worker path
- httpx AsyncClient over the ASGI app, sharing the test session
"""
import base64
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage
from email.utils import format_datetime
from typing import AsyncGenerator, Generator

os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["ENV"] = "test"
os.environ["INTERNAL_SECRET"] = "test-internal-secret"
os.environ["GMAIL_PUSH_TOPIC"] = ""
os.environ["GMAIL_PUSH_VERIFICATION_TOKEN"] = ""
os.environ["GMAIL_PUSH_TEST_MODE"] = "true"
os.environ["ENRICHMENT_API_URL"] = ""
os.environ["SENTRY_DSN"] = ""

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

from mailgraph.core.errors import AuthExpiredError, CursorExpiredError, SyncError
from mailgraph.db.base import Base
from mailgraph.db.models import Account, SyncState
from mailgraph.db.session import SessionLocal, engine
from mailgraph.jobs.payloads import MailboxQuery
from mailgraph.services import job_service
from mailgraph.services.gmail_client import (
    FetchResult,
    MailboxProfile,
    MessagePage,
    WatchResult,
    set_mailbox_client,
)
from mailgraph.utils.time import ensure_utc, utcnow

INTERNAL_HEADERS = {"X-Internal-Secret": "test-internal-secret"}
OWNER_EMAIL = "owner@mycompany.com"


# =============================================================================
# Database
# =============================================================================

@pytest.fixture(scope="session", autouse=True)
def _schema() -> Generator[None, None, None]:
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Session on the shared in-memory database; all rows are deleted afterwards."""
    session = SessionLocal()
    yield session
    session.rollback()
    session.close()
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture
def account(db: Session) -> Account:
    """Linked Gmail account with an empty sync state."""
    acct = Account(
        id=uuid.uuid4(),
        user_id=uuid.uuid4(),
        email_address=OWNER_EMAIL,
        refresh_token="refresh-token",
    )
    db.add(acct)
    db.flush()
    db.add(SyncState(account_id=acct.id, version=0))
    db.commit()
    db.refresh(acct)
    return acct


# =============================================================================
# Raw message builder
# =============================================================================

def make_raw_message(
    message_id: str,
    *,
    sender: str = "Alice Smith <a@x.com>",
    to: str = OWNER_EMAIL,
    cc: str | None = None,
    subject: str = "Hello",
    body: str = "Hi there",
    sent_at: datetime | None = None,
    history_id: int | None = None,
    thread_id: str | None = None,
) -> dict:
    """Gmail ``format=raw`` message resource."""
    sent_at = sent_at or utcnow() - timedelta(days=1)
    msg = EmailMessage()
    msg["From"] = sender
    msg["To"] = to
    if cc:
        msg["Cc"] = cc
    msg["Subject"] = subject
    msg["Date"] = format_datetime(sent_at)
    msg["Message-ID"] = f"<{message_id}@mail.test>"
    msg.set_content(body)
    raw = base64.urlsafe_b64encode(msg.as_bytes()).decode("ascii").rstrip("=")
    resource = {
        "id": message_id,
        "threadId": thread_id or f"t-{message_id}",
        "raw": raw,
        "internalDate": str(int(sent_at.timestamp() * 1000)),
        "labelIds": ["INBOX"],
        "snippet": body[:50],
    }
    if history_id is not None:
        resource["historyId"] = str(history_id)
    return resource


# =============================================================================
# Fake mailbox client
# =============================================================================

@dataclass
class FakeMailbox:
    """
    In-memory stand-in for GmailClient.

    ``history`` holds (history_id, [message ids]) records; ``messages`` the
    raw resources. ``fetch_errors`` / ``list_errors`` inject failures.
    """

    history_id: int = 100
    page_size: int = 50
    messages: dict[str, dict] = field(default_factory=dict)
    history: list[tuple[int, list[str]]] = field(default_factory=list)
    fetch_errors: dict[str, SyncError] = field(default_factory=dict)
    list_errors: list[SyncError] = field(default_factory=list)
    history_expired: bool = False
    calls: list[tuple] = field(default_factory=list)

    def add_message(self, resource: dict, *, history_id: int | None = None) -> None:
        self.messages[resource["id"]] = resource
        if history_id is not None:
            self.history.append((history_id, [resource["id"]]))
            self.history_id = max(self.history_id, history_id)

    @staticmethod
    def _sent_at(resource: dict) -> datetime:
        return datetime.fromtimestamp(int(resource["internalDate"]) / 1000, tz=timezone.utc)

    async def list_message_ids(self, account, query: MailboxQuery, page_token=None) -> MessagePage:
        self.calls.append(("list", query, page_token))
        if self.list_errors:
            raise self.list_errors.pop(0)
        start = int(page_token or 0)
        if query.start_history_id is not None:
            if self.history_expired:
                raise CursorExpiredError("Gmail API error 404: Requested entity was not found.")
            records = sorted(r for r in self.history if r[0] > query.start_history_id)
            chunk = records[start:start + self.page_size]
            more = start + self.page_size < len(records)
            return MessagePage(
                ids=[mid for _, mids in chunk for mid in mids],
                next_page_token=str(start + self.page_size) if more else None,
                history_id=self.history_id,
                max_record_history_id=max((r[0] for r in chunk), default=None),
            )

        after = ensure_utc(query.after)
        before = ensure_utc(query.before)
        matching = sorted(
            (
                mid
                for mid, resource in self.messages.items()
                if (after is None or self._sent_at(resource) > after)
                and (before is None or self._sent_at(resource) < before)
            ),
            key=lambda mid: self._sent_at(self.messages[mid]),
            reverse=True,
        )
        chunk = matching[start:start + self.page_size]
        more = start + self.page_size < len(matching)
        return MessagePage(ids=chunk, next_page_token=str(start + self.page_size) if more else None)

    async def get_message(self, account, message_id: str) -> dict:
        self.calls.append(("get", message_id))
        if message_id in self.fetch_errors:
            raise self.fetch_errors[message_id]
        return self.messages[message_id]

    async def get_messages(self, account, ids: list[str]) -> FetchResult:
        result = FetchResult()
        for message_id in ids:
            try:
                result.messages.append(await self.get_message(account, message_id))
            except AuthExpiredError:
                raise
            except SyncError as exc:
                result.failures[message_id] = exc
        return result

    async def get_profile(self, account) -> MailboxProfile:
        self.calls.append(("profile",))
        return MailboxProfile(email_address=account.email_address, history_id=self.history_id)

    async def watch(self, account) -> WatchResult:
        self.calls.append(("watch",))
        return WatchResult(history_id=self.history_id, expires_at=utcnow() + timedelta(days=7))

    async def stop_watch(self, account) -> None:
        self.calls.append(("stop",))


@pytest.fixture
def mailbox() -> Generator[FakeMailbox, None, None]:
    fake = FakeMailbox()
    set_mailbox_client(fake)
    yield fake
    set_mailbox_client(None)


# =============================================================================
# Job draining
# =============================================================================

async def drain_jobs(
    db: Session,
    *,
    job_types: list[str] | None = None,
    max_jobs: int = 200,
) -> list[tuple[str, str]]:
    """Claim and execute queued jobs (delayed ones included) until the queue is empty."""
    from mailgraph.worker import execute_job

    processed = []
    horizon = utcnow() + timedelta(days=1)
    for _ in range(max_jobs):
        job = job_service.claim_next_job(db, "test-worker", job_types=job_types, now=horizon)
        if job is None:
            break
        status = await execute_job(db, job)
        processed.append((job.job_type, status))
    return processed


# =============================================================================
# HTTP client
# =============================================================================

@pytest.fixture
async def client(db: Session) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient against the app, sharing the test's database session."""
    from mailgraph.core.deps import get_db
    from mailgraph.main import app

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()
