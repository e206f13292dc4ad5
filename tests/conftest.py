"""Shared test fixtures for the automation core."""
import asyncio
import pytest
import pytest_asyncio
from typing import Any

from channels.base import OutboundTransport
from config.settings import BotConfig, DispatchConfig
from context.manager import ConversationStateManager
from database.session import build_engine, create_session_factory, create_tables
from database.store import SqlStore
from database.store_memory import InMemoryStore
from events.bus import EventBus
from job_queue.dispatcher import JobDispatcher
from job_queue.worker import DispatchWorkerPool


class FakeTransport(OutboundTransport):
    """
    Scripted transport. `script[recipient]` is a list of outcomes consumed
    one per send: an exception instance is raised, a string is returned as
    the message id. With nothing scripted the send succeeds.
    """

    def __init__(self, script: dict[str, list[Any]] = None, delay: float = 0.0):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.delay = delay
        self.sent: list[tuple[str, str, dict]] = []
        self.calls: dict[str, int] = {}
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def send(self, device_id: str, recipient: str, payload: dict[str, Any]) -> str:
        self.calls[recipient] = self.calls.get(recipient, 0) + 1
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            steps = self.script.get(recipient)
            outcome = steps.pop(0) if steps else None
        finally:
            self.in_flight -= 1

        if isinstance(outcome, BaseException):
            raise outcome
        self.sent.append((device_id, recipient, payload))
        return outcome or f"wamid.{recipient}.{self.calls[recipient]}"

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def dispatch_config() -> DispatchConfig:
    """Fast settings: tiny backoff, no rate limit, short idle poll."""
    return DispatchConfig(
        device_concurrency=2,
        batch_size=10,
        max_attempts=3,
        backoff_base_seconds=0.01,
        backoff_max_seconds=0.05,
        backoff_jitter=0.0,
        send_timeout_seconds=1.0,
        rate_per_second=0,
        poll_interval_seconds=0.01,
        claim_ttl_seconds=300,
    )


@pytest.fixture
def bot_config() -> BotConfig:
    return BotConfig(reply_max_attempts=3, reply_backoff_seconds=0.001)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest_asyncio.fixture
async def sql_store(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'automation.db'}")
    await create_tables(engine)
    yield SqlStore(create_session_factory(engine))
    await engine.dispose()


@pytest_asyncio.fixture(params=["memory", "sql"])
async def any_store(request, tmp_path):
    """Runs a test once per store backend."""
    if request.param == "memory":
        yield InMemoryStore()
        return
    engine = build_engine(f"sqlite:///{tmp_path / 'automation.db'}")
    await create_tables(engine)
    yield SqlStore(create_session_factory(engine))
    await engine.dispose()


@pytest.fixture
def bus() -> EventBus:
    return EventBus(buffer=1000)


@pytest.fixture
def dispatcher(store, bus) -> JobDispatcher:
    return JobDispatcher(store, bus, progress_interval=0)


@pytest_asyncio.fixture
async def pool(dispatcher, transport, dispatch_config):
    pool = DispatchWorkerPool(dispatcher, transport, dispatch_config)
    await pool.start()
    yield pool
    await pool.stop(timeout=1)


@pytest.fixture
def manager(store, bus) -> ConversationStateManager:
    return ConversationStateManager(store, bus)


@pytest.fixture
def wait_for_job(dispatcher):
    """Poll until the job is terminal and every item is final."""
    async def _wait(job_id: str, timeout: float = 5.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            job = await dispatcher.get_job(job_id)
            items = await dispatcher.list_job_items(job_id)
            if job.is_terminal and all(i.is_final for i in items):
                return job
            if loop.time() > deadline:
                raise AssertionError(f"job {job_id} still {job.status.value}: {job.progress}")
            await asyncio.sleep(0.01)
    return _wait


def drain(subscription) -> list:
    events = []
    event = subscription.get_nowait()
    while event is not None:
        events.append(event)
        event = subscription.get_nowait()
    return events


@pytest.fixture
def drain_events():
    return drain
