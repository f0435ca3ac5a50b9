#
# Copyright contributors to the sqlserver-agent project
#
from typing import Any, Dict, List, Optional

import pytest

from sqlserver_agent.agentstatus import AgentStatus
from sqlserver_agent.exceptions import SecretResolutionError
from sqlserver_agent.models import InstanceProperties


class FakeSecrets:
    def __init__(self, secrets: Optional[Dict[str, str]] = None):
        self.secrets = secrets or {}
        self.requested: List[str] = []

    def resolve(self, name: str) -> str:
        self.requested.append(name)
        if name not in self.secrets:
            raise SecretResolutionError(f"secret {name} not found")
        return self.secrets[name]


class FakeCursor:
    def __init__(self, conn: "FakeConnection"):
        self.conn = conn
        self._rows: List[tuple] = []

    def execute(self, query: str) -> None:
        self.conn.executed.append(query)
        if query == "SELECT 1":
            if self.conn.ping_error:
                raise self.conn.ping_error
            self._rows = [(1,)]
            return
        result = self.conn.results.get(query.strip())
        if isinstance(result, Exception):
            raise result
        self._rows = list(result or [])

    def fetchall(self) -> List[tuple]:
        return self._rows

    def close(self) -> None:
        self.conn.cursors_closed += 1


class FakeConnection:
    """DB-API connection answering queries from a ``{query: rows}`` table."""

    def __init__(self, results: Optional[Dict[str, Any]] = None, ping_error: Optional[Exception] = None):
        self.results = {k.strip(): v for k, v in (results or {}).items()}
        self.ping_error = ping_error
        self.executed: List[str] = []
        self.cursors_closed = 0
        self.closed = False

    def cursor(self) -> FakeCursor:
        return FakeCursor(self)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def status() -> AgentStatus:
    return AgentStatus("test-agent", "0.0.0", enabled=False)


@pytest.fixture
def instance_properties() -> InstanceProperties:
    return InstanceProperties(
        project_id="my-project",
        project_number="1234",
        instance_id="987654321",
        name="sql-vm-1",
        zone="us-central1-a",
    )


@pytest.fixture
def fake_secrets() -> FakeSecrets:
    return FakeSecrets({"sql-password": "s3cret"})
