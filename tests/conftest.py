"""Shared pytest fixtures for script-autosave tests."""

from __future__ import annotations

from concurrent.futures import Executor, Future

import pytest

from script_autosave import (
    CoordinatorConfig,
    ManualScheduler,
    RemoteSaveResult,
    RevisionStore,
    SaveCoordinator,
    content_hash,
)
from script_autosave.storage import MemoryKeyValueStore

PROJECT = "proj-1"
EPISODE = 1


class FakeClock:
    """Epoch-millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeRemote:
    """Remote project record holding a single script.

    Each call pops the next queued failure, if any: an exception is raised,
    a RemoteSaveResult is returned as-is without writing, and a string
    becomes a plain failure reason. Otherwise the write is applied and the
    prior content is reported.
    """

    def __init__(self, content: str = "") -> None:
        self.content = content
        self.calls: list[str] = []
        self.failures: list = []

    def __call__(self, project_id, episode_key, content: str) -> RemoteSaveResult:
        self.calls.append(content)
        if self.failures:
            failure = self.failures.pop(0)
            if isinstance(failure, Exception):
                raise failure
            if isinstance(failure, RemoteSaveResult):
                return failure
            return RemoteSaveResult.failure(failure)
        prior = self.content
        self.content = content
        return RemoteSaveResult.success(content_hash(prior), prior)


class DeferredExecutor(Executor):
    """Executor that holds submitted calls until the test runs them."""

    def __init__(self) -> None:
        self.queue: list = []

    def submit(self, fn, /, *args, **kwargs) -> Future:
        future: Future = Future()
        self.queue.append((future, fn, args, kwargs))
        return future

    def run_next(self) -> None:
        future, fn, args, kwargs = self.queue.pop(0)
        try:
            result = fn(*args, **kwargs)
        except Exception as exc:
            future.set_exception(exc)
        else:
            future.set_result(result)

    def run_all(self) -> int:
        ran = 0
        while self.queue:
            self.run_next()
            ran += 1
        return ran


class Harness:
    """A coordinator wired to fakes, with virtual time and manual saves."""

    def __init__(self, remote_content: str = "A", **config) -> None:
        self.clock = FakeClock()
        self.kv = MemoryKeyValueStore()
        self.store = RevisionStore(self.kv, clock=self.clock)
        self.remote = FakeRemote(remote_content)
        self.scheduler = ManualScheduler()
        self.executor = DeferredExecutor()
        self.coordinator = SaveCoordinator(
            PROJECT,
            EPISODE,
            remote_save=self.remote,
            revisions=self.store,
            config=CoordinatorConfig(**config),
            scheduler=self.scheduler,
            executor=self.executor,
            clock=self.clock,
        )

    def open(self, remote_updated_at: int | None = None):
        if remote_updated_at is None:
            remote_updated_at = self.clock()
        return self.coordinator.open(self.remote.content, remote_updated_at)

    def wait_debounce(self) -> None:
        self.scheduler.advance(self.coordinator.config.debounce_seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def kv() -> MemoryKeyValueStore:
    return MemoryKeyValueStore()


@pytest.fixture
def store(kv: MemoryKeyValueStore, clock: FakeClock) -> RevisionStore:
    return RevisionStore(kv, clock=clock)


@pytest.fixture
def harness() -> Harness:
    return Harness()
