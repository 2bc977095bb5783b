"""
Shared fixtures: a scripted stand-in for the clickhouse-connect client.
"""
import copy

import pytest

from checkmyhouse.backends.clickhouse_backend import ClickHouseBackend
from checkmyhouse.config import DashboardConfig
from checkmyhouse.controller import DashboardController
from checkmyhouse.planner.capability_prober import CapabilityProber
from checkmyhouse.types.connection import ConnectionSettings


class FakeQueryResult:
    def __init__(self, rows):
        self._rows = rows

    def named_results(self):
        return iter(copy.deepcopy(self._rows))


class FakeClickHouseClient:
    """
    Answers queries by SQL fragment and records every statement it receives.

    The most recently registered fragment wins; statements matching nothing
    return no rows. A registered exception is raised instead of answering.
    """

    def __init__(self):
        self.responses = []
        self.queries = []
        self.closed = False

    def on(self, fragment, result):
        self.responses.insert(0, (fragment, result))
        return self

    def query(self, sql, settings=None):
        self.queries.append(sql)
        for fragment, result in self.responses:
            if fragment in sql:
                if isinstance(result, BaseException):
                    raise result
                return FakeQueryResult(result)
        return FakeQueryResult([])

    def count(self, fragment):
        return sum(1 for sql in self.queries if fragment in sql)

    def close(self):
        self.closed = True


SETTINGS = ConnectionSettings(host="http://localhost:8123", username="default")


@pytest.fixture
def fake_client():
    return FakeClickHouseClient()


@pytest.fixture
def backend(fake_client):
    return ClickHouseBackend(client=fake_client, retry_delay=0)


@pytest.fixture
def prober(backend):
    return CapabilityProber(backend)


@pytest.fixture
def config():
    return DashboardConfig(retry_delay=0)


@pytest.fixture
def controller(config, fake_client):
    return DashboardController(
        config=config,
        backend_factory=lambda settings: ClickHouseBackend(settings=settings, client=fake_client, retry_delay=0),
        connection_tester=lambda settings: (True, "Connection successful"),
    )
