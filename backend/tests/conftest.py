import asyncio
import os
from collections.abc import AsyncIterator, Generator
from dataclasses import dataclass, field
from uuid import UUID

import pytest
from sqlalchemy.ext import asyncio as sa_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

# Keep pytest output high-signal by disabling outbound Sentry capture in tests.
os.environ["SENTRY_DSN"] = ""
# The module-level engine must not need a running Postgres.
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from erasure.core import metrics  # noqa: E402
from erasure.db.base import Base  # noqa: E402
from erasure.models.account import Account  # noqa: E402
from erasure.services import notifier as notifier_service  # noqa: E402
from erasure.services.notifier import DeletionNotice  # noqa: E402
from erasure.services.purge import PurgeResult  # noqa: E402


_TRACKED_ENGINES: list[sa_asyncio.AsyncEngine] = []
_ORIGINAL_CREATE_ASYNC_ENGINE = sa_asyncio.create_async_engine


def _tracked_create_async_engine(*args, **kwargs):  # type: ignore[no-untyped-def]
    engine = _ORIGINAL_CREATE_ASYNC_ENGINE(*args, **kwargs)
    _TRACKED_ENGINES.append(engine)
    return engine


sa_asyncio.create_async_engine = _tracked_create_async_engine  # type: ignore[assignment]


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _dispose_tracked_async_engines() -> Generator[None, None, None]:
    start_index = len(_TRACKED_ENGINES)
    yield
    pending = _TRACKED_ENGINES[start_index:]
    if not pending:
        return

    async def _dispose_all() -> None:
        for engine in pending:
            try:
                await engine.dispose()
            except Exception:
                continue

    try:
        asyncio.run(_dispose_all())
    except RuntimeError:
        loop = asyncio.new_event_loop()
        try:
            loop.run_until_complete(_dispose_all())
        finally:
            loop.close()

    del _TRACKED_ENGINES[start_index:]


@pytest.fixture(autouse=True)
def _reset_process_state() -> Generator[None, None, None]:
    # Counters and the default notifier are process-global and would leak across tests.
    metrics.reset()
    notifier_service._default_notifier = None
    yield
    metrics.reset()
    notifier_service._default_notifier = None


@pytest.fixture
async def session_factory() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    engine = sa_asyncio.create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
    await engine.dispose()


async def create_account(session_factory, *, email: str = "user@example.com", name: str | None = "User", **values) -> UUID:
    async with session_factory() as session:
        account = Account(email=email, name=name, **values)
        session.add(account)
        await session.commit()
        return account.id


@dataclass
class RecordingNotifier:
    notices: list[DeletionNotice] = field(default_factory=list)
    queued: bool = True

    def notify(self, notice: DeletionNotice) -> bool:
        self.notices.append(notice)
        return self.queued

    def kinds(self) -> list[str]:
        return [notice.kind.value for notice in self.notices]


@dataclass
class FakePurgeExecutor:
    error: Exception | None = None
    delay: float = 0.0
    calls: list[UUID] = field(default_factory=list)
    summary: dict = field(default_factory=lambda: {"sessions": 0, "notifications": 0, "files": 0})

    async def purge(self, account_id: UUID) -> PurgeResult:
        self.calls.append(account_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return PurgeResult(account_id=account_id, summary=dict(self.summary))


@pytest.fixture
def recording_notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def fake_executor() -> FakePurgeExecutor:
    return FakePurgeExecutor()
