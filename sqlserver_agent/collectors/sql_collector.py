"""
Copyright contributors to the sqlserver-agent project
"""

"""SQL Server rule execution.

Uses ``pymssql`` to open one connection per SQL Server target and runs
every master rule over it in registry order. A failing rule is logged
and skipped; it never stops the rules after it. The connection is
closed when the collector is used as a context manager, on every exit
path.

Each rule runs under one deadline of ``timeout`` seconds that covers
both the liveness probe and the rule query. Before every statement the
driver's statement timeout is lowered to what is left of the deadline,
so a stalled server costs a rule at most ``timeout`` seconds.
"""

from typing import Any, Callable, Iterable, List, Optional
import logging
import ntpath
import posixpath
import time

import pymssql

from ..agentstatus import AgentStatus, StatusCode
from ..exceptions import QueryExecutionError
from ..models import Detail, UNKNOWN
from .rules import LOG_DISK_SEPARATION, MASTER_RULES, Rule

logger = logging.getLogger("sqlagent.sql")

PING_QUERY = "SELECT 1"
PING_TIMEOUT_SECONDS = 2


def _set_query_timeout(connection: Any, seconds: int) -> None:
    # pymssql keeps the statement timeout on the underlying _mssql connection
    connection._conn.query_timeout = seconds


class SQLCollector:
    """Runs the master rules against one SQL Server connection.

    ``timeout`` is the per-rule deadline in whole seconds; ``None`` leaves
    statements bounded only by the connection's own timeout.
    """

    def __init__(self, connection: Any, windows: bool,
                 status: Optional[AgentStatus] = None,
                 rules: Optional[List[Rule]] = None,
                 timeout: Optional[float] = None,
                 set_timeout: Callable[[Any, int], None] = _set_query_timeout,
                 clock: Callable[[], float] = time.monotonic):
        self._conn = connection
        self.windows = windows
        self.status = status
        self.rules = MASTER_RULES if rules is None else rules
        self.timeout = timeout
        self._set_timeout = set_timeout
        self._clock = clock

    @classmethod
    def connect(cls, host: str, username: str, password: str, port: int,
                timeout: float, windows: bool,
                status: Optional[AgentStatus] = None,
                connect: Optional[Callable[..., Any]] = None) -> "SQLCollector":
        """Open a connection whose rules are each bounded by ``timeout`` seconds."""
        connect = connect or pymssql.connect
        # the driver counts whole seconds and treats 0 as "no timeout"
        seconds = max(1, int(timeout))
        conn = connect(
            server=host,
            user=username,
            password=password,
            port=str(port),
            database="master",
            login_timeout=seconds,
            timeout=seconds,
        )
        return cls(conn, windows, status=status, timeout=seconds)

    def __enter__(self) -> "SQLCollector":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        try:
            self._conn.close()
        except Exception as e:
            logger.warning("Failed to close sql connection", extra={"error": str(e)})

    def collect_master_rules(self) -> List[Detail]:
        """Run every rule; failed rules are absent from the result."""
        details: List[Detail] = []
        for rule in self.rules:
            deadline = None if self.timeout is None else self._clock() + self.timeout
            try:
                rows = self._execute_sql(rule.query, deadline)
                fields = rule.fields(rows)
            except Exception as e:
                logger.error("Failed to run sql rule", extra={"rule": rule.name, "error": str(e)})
                if self.status:
                    self.status.error(StatusCode.SQL_QUERY_EXECUTION)
                continue
            details.append(Detail(name=rule.name, fields=fields))
        return details

    def _execute_sql(self, query: str, deadline: Optional[float] = None) -> List[tuple]:
        cur = self._conn.cursor()
        try:
            # liveness probe before every rule; a dropped connection fails fast here
            self._bound_statement(deadline, PING_TIMEOUT_SECONDS)
            cur.execute(PING_QUERY)
            cur.fetchall()
            self._bound_statement(deadline)
            cur.execute(query)
            return [tuple(row) for row in cur.fetchall()]
        finally:
            cur.close()

    def _bound_statement(self, deadline: Optional[float], cap: Optional[int] = None) -> None:
        if deadline is None:
            return
        # whole seconds, rounded down so the statement ends before the deadline
        remaining = int(deadline - self._clock())
        if cap is not None:
            remaining = min(remaining, cap)
        if remaining < 1:
            raise QueryExecutionError("rule deadline exceeded")
        self._set_timeout(self._conn, remaining)


def add_physical_drive(details: List[Detail], windows: bool,
                       mount_points: Optional[Iterable[str]] = None) -> List[Detail]:
    """Add ``physical_drive`` to every database file field.

    On Windows this is the drive of the file path; on Linux it is the
    longest mount point containing the file. Fields are updated in place.
    """
    mounts = None
    for detail in details:
        if detail.name != LOG_DISK_SEPARATION:
            continue
        for field in detail.fields:
            path = field.get("physical_name", "")
            if windows:
                drive = ntpath.splitdrive(path)[0]
            else:
                if mounts is None:
                    mounts = list(mount_points) if mount_points is not None else _linux_mount_points()
                drive = _mount_for(path, mounts)
            field["physical_drive"] = drive or UNKNOWN
    return details


def _mount_for(path: str, mounts: Iterable[str]) -> str:
    if not path.startswith("/"):
        return ""
    path = posixpath.normpath(path)
    best = ""
    for mount in mounts:
        prefix = mount.rstrip("/") + "/"
        if (path == mount or path.startswith(prefix) or mount == "/") and len(mount) > len(best):
            best = mount
    return best


def _linux_mount_points() -> List[str]:
    try:
        with open("/proc/mounts", "r", encoding="utf-8") as fh:
            return [line.split()[1] for line in fh if len(line.split()) > 1]
    except OSError as e:
        logger.warning("Failed to read mount points", extra={"error": str(e)})
        return []
