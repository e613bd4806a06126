from datetime import datetime, timezone
from pathlib import Path

import pytest
from prometheus_client import CollectorRegistry

from tokenrelay.config import Config
from tokenrelay.ledger import Ledger
from tokenrelay.metrics import RelayMetrics


class FakeClock:
    """
    settable clock so tests control record creation dates.
    """

    def __init__(self, now: "datetime") -> "None":
        self.now = now

    def __call__(self) -> "datetime":
        return self.now


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


@pytest.fixture()
def metrics(registry: "CollectorRegistry") -> "RelayMetrics":
    return RelayMetrics(registry=registry)


@pytest.fixture()
def clock() -> "FakeClock":
    return FakeClock(datetime(2026, 3, 14, 12, 0, tzinfo=timezone.utc))


@pytest.fixture()
def ledger(tmp_path: "Path", clock: "FakeClock") -> "Ledger":
    store = Ledger(tmp_path / "usage.db", clock=clock)
    yield store
    store.close()


@pytest.fixture()
def config() -> "Config":
    return Config(
        anthropic_api_key="sk-ant-test-secret",
        anthropic_base_url="https://upstream.test",
    )
