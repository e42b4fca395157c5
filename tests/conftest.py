import pytest
from prometheus_client import CollectorRegistry

from cachemeter.result import Err, Result, StorageErrorKind
from cachemeter.storage.memory import MemoryStore

# 2023-11-14T22:13:20Z
START_MS = 1_700_000_000_000


class FakeClock:
    """
    A controllable millisecond clock.
    """

    def __init__(self, start: "int" = START_MS) -> "None":
        self.now = start

    def __call__(self) -> "int":
        return self.now

    def advance(self, seconds: "float" = 0, ms: "int" = 0) -> "None":
        self.now += int(seconds * 1000) + ms


class FailingStore:
    """
    A store whose every operation fails.
    """

    def __init__(self, kind: "StorageErrorKind" = StorageErrorKind.UNAVAILABLE) -> "None":
        self.kind = kind

    async def get_item(self, key: "str") -> "Result[str | None]":
        return Err(self.kind, "disk gone")

    async def set_item(self, key: "str", value: "str") -> "Result[None]":
        return Err(StorageErrorKind.WRITE_FAILURE, "quota exceeded")

    async def remove_item(self, key: "str") -> "Result[None]":
        return Err(StorageErrorKind.WRITE_FAILURE, "quota exceeded")

    async def get_all_keys(self) -> "Result[list[str]]":
        return Err(self.kind, "disk gone")

    async def close(self) -> "None":
        pass


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


@pytest.fixture()
def clock() -> "FakeClock":
    return FakeClock()


@pytest.fixture()
def store() -> "MemoryStore":
    return MemoryStore()


@pytest.fixture()
def failing_store() -> "FailingStore":
    return FailingStore()
