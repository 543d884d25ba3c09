from __future__ import annotations

import asyncio
import time
import uuid
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import date
from decimal import Decimal

import httpx
import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from retrospend.config import Settings
from retrospend.database import Base
from retrospend.exceptions import ImportParseError
from retrospend.main import app
from retrospend.models import *  # noqa: F401, F403 (registers every model on Base)
from retrospend.models.import_job import ImportJob
from retrospend.plugins import registry
from retrospend.plugins.base import FileParserPlugin, ParseResult, ProgressCallback
from retrospend.plugins.parsers.spreadsheet import SpreadsheetParser
from retrospend.schemas.transaction import ParsedTransaction
from retrospend.services.import_queue_service import ImportQueueService

SPREADSHEET_CSV = (
    b"title,amount,currency,date,location\n"
    b"Coffee,4.50,USD,2024-01-15,Cafe\n"
    b"Groceries,52.10,USD,2024-01-16,Market\n"
)


@pytest.fixture()
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine]:
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'imports.db'}", echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture()
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture()
async def async_db(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest.fixture()
def queue_settings() -> Settings:
    return Settings(
        _env_file=None,
        MAX_CONCURRENT_IMPORT_JOBS=3,
        MAX_PENDING_IMPORT_JOBS=5,
        BASE_CURRENCY="USD",
    )


@pytest.fixture()
async def queue(
    session_factory: async_sessionmaker[AsyncSession], queue_settings: Settings
) -> AsyncGenerator[ImportQueueService]:
    service = ImportQueueService(session_factory, queue_settings)
    yield service
    await service.wait_idle()


@pytest.fixture(autouse=True)
def parser_registry():
    """Start every test with only the spreadsheet parser registered."""
    saved = dict(registry.get_all("parser"))
    registry.get_all("parser").clear()
    registry.register("parser", SpreadsheetParser())
    yield
    registry.get_all("parser").clear()
    registry.get_all("parser").update(saved)


@pytest.fixture()
async def client(queue: ImportQueueService) -> AsyncGenerator[httpx.AsyncClient]:
    app.state.import_queue = queue

    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c

    app.state.import_queue = None


@pytest.fixture()
def user_id() -> uuid.UUID:
    return uuid.uuid4()


class GatedStatementParser(FileParserPlugin):
    """Stands in for the statement importer; each file waits until released."""

    name = "statement"
    supported_extensions = [".pdf", ".csv"]

    def __init__(self) -> None:
        self.started: list[str] = []
        self._gates: dict[str, asyncio.Event] = {}
        self._open = False

    def gate(self, filename: str) -> asyncio.Event:
        event = self._gates.setdefault(filename, asyncio.Event())
        if self._open:
            event.set()
        return event

    def release(self, filename: str) -> None:
        self.gate(filename).set()

    def open(self) -> None:
        """Let every current and future file through."""
        self._open = True
        for event in self._gates.values():
            event.set()

    async def parse(
        self,
        file_content: bytes,
        filename: str,
        file_type: str,
        config: Settings,
        on_progress: ProgressCallback | None = None,
    ) -> ParseResult:
        self.started.append(filename)
        if on_progress is not None:
            await on_progress(0.5, "Extracting transactions")
        await self.gate(filename).wait()
        if filename.startswith("bad"):
            raise ImportParseError("Importer service error [500]: boom")
        txn = ParsedTransaction(
            title=f"Statement line from {filename}",
            amount=Decimal("12.34"),
            currency="USD",
            exchange_rate=Decimal(1),
            amount_in_usd=Decimal("12.34"),
            date=date(2024, 3, 1),
        )
        return ParseResult(transactions=[txn], warnings=[])


@pytest.fixture()
def gated_parser(queue: ImportQueueService):
    parser = GatedStatementParser()
    registry.register("parser", parser)
    yield parser
    parser.open()


async def wait_until(predicate: Callable[[], Awaitable[bool]], timeout: float = 5.0) -> None:
    deadline = time.monotonic() + timeout
    while not await predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


async def load_job(
    session_factory: async_sessionmaker[AsyncSession], job_id: uuid.UUID
) -> ImportJob:
    async with session_factory() as db:
        job = await db.get(ImportJob, job_id)
        assert job is not None
        return job
