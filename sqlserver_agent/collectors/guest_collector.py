"""
Copyright contributors to the sqlserver-agent project
"""

"""Guest OS fact collection.

All rules of a pass are started together, each in its own short-lived
thread that reports into a private single-slot queue. The collector
then waits on the slots against one shared deadline. A rule that misses
the deadline is recorded as ``"unknown"`` (when reported) and abandoned.
Abandonment is best-effort only: the thread may keep running, but it can
only ever write to its own slot, which nobody reads any more. The
command runners pass the timeout down to the child process as well, so
most abandoned checks are killed shortly after.
"""

from typing import Any, Callable, Dict, List, Optional, Tuple
import logging
import platform
import queue
import threading
import time

from ..agentstatus import AgentStatus, StatusCode
from ..exceptions import QueryExecutionError
from ..models import Detail, UNKNOWN
from .guest_rules import DERIVED_RULES, LINUX_RULES, WINDOWS_RULES, DerivedRule, GuestRule
from .utils import run_command

logger = logging.getLogger("sqlagent.guest")

OS_DETAIL_NAME = "OS"

Runner = Callable[[GuestRule, float], str]
Outcome = Tuple[Any, Optional[BaseException]]


class WMIRunner:
    """Runs a WMI query through Windows PowerShell and returns its JSON."""

    def __call__(self, rule: GuestRule, timeout: float) -> str:
        select = ", ".join(rule.properties) if rule.properties else "*"
        script = (
            f"Get-WmiObject -Namespace '{rule.namespace}' -Query \"{rule.query}\" "
            f"| Select-Object {select} | ConvertTo-Json -Compress"
        )
        rc, out, serr = run_command(
            ["powershell.exe", "-NoProfile", "-NonInteractive", "-Command", script], timeout=timeout)
        if rc != 0:
            raise QueryExecutionError(f"wmi query failed (rc={rc}): {serr.strip()}")
        return out


class ShellRunner:
    """Runs a rule's command with ``sh -c`` on the local host."""

    def __call__(self, rule: GuestRule, timeout: float) -> str:
        rc, out, serr = run_command(["sh", "-c", rule.query], timeout=timeout)
        if rc != 0:
            raise QueryExecutionError(f"command failed (rc={rc}): {serr.strip()}")
        return out


def evaluate(rule: GuestRule, runner: Runner, timeout: float) -> Any:
    """Run one guest rule and parse its output."""
    return rule.parse(runner(rule, timeout))


class GuestCollector:
    def __init__(self, rules: List[GuestRule], runner: Runner,
                 status: Optional[AgentStatus] = None,
                 derived_rules: Optional[List[DerivedRule]] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.rules = rules
        self.runner = runner
        self.status = status
        self.derived_rules = DERIVED_RULES if derived_rules is None else derived_rules
        self._clock = clock

    def collect_guest_rules(self, timeout: float) -> Detail:
        """Collect all guest rules into a single ``OS`` detail."""
        deadline = self._clock() + timeout
        slots = [(rule, self._launch(rule, timeout)) for rule in self.rules]

        fields: Dict[str, str] = {}
        tables: Dict[str, Any] = {}
        for rule, slot in slots:
            try:
                value, error = slot.get(timeout=max(0.0, deadline - self._clock()))
            except queue.Empty:
                logger.error("Guest rule timed out", extra={"rule": rule.name, "timeout": timeout})
                self._error(StatusCode.GUEST_COLLECTION_TIMEOUT)
                if rule.reported:
                    fields[rule.name] = UNKNOWN
                continue
            if error is not None:
                logger.error("Guest rule failed", extra={"rule": rule.name, "error": str(error)})
                self._error(StatusCode.INVALID_JSON_FORMAT if isinstance(error, ValueError)
                            else StatusCode.GUEST_QUERY_EXECUTION)
                if rule.reported:
                    fields[rule.name] = UNKNOWN
                continue
            if rule.reported:
                fields[rule.name] = value
            else:
                tables[rule.name] = value

        for derived in self.derived_rules:
            fields[derived.name] = self._derive(derived, tables)
        return Detail(name=OS_DETAIL_NAME, fields=[fields])

    def _launch(self, rule: GuestRule, timeout: float) -> "queue.Queue[Outcome]":
        slot: "queue.Queue[Outcome]" = queue.Queue(maxsize=1)

        def task() -> None:
            try:
                slot.put((evaluate(rule, self.runner, timeout), None))
            except Exception as e:
                slot.put((None, e))

        threading.Thread(target=task, name=f"guest-rule-{rule.name}", daemon=True).start()
        return slot

    def _derive(self, derived: DerivedRule, tables: Dict[str, Any]) -> str:
        if any(name not in tables for name in derived.inputs):
            logger.warning("Derived rule inputs missing", extra={
                "rule": derived.name,
                "missing": [name for name in derived.inputs if name not in tables],
            })
            return UNKNOWN
        try:
            value = derived.derive(*(tables[name] for name in derived.inputs))
        except Exception as e:
            logger.error("Derived rule failed", extra={"rule": derived.name, "error": str(e)})
            self._error(StatusCode.INVALID_JSON_FORMAT)
            return UNKNOWN
        return value if value else UNKNOWN

    def _error(self, code: StatusCode) -> None:
        if self.status:
            self.status.error(code)


def new_guest_collector(status: Optional[AgentStatus] = None, system: Optional[str] = None,
                        runner: Optional[Runner] = None) -> GuestCollector:
    """Return the guest collector for the platform the agent runs on."""
    system = system or platform.system()
    if system == "Windows":
        return GuestCollector(WINDOWS_RULES, runner or WMIRunner(), status=status)
    return GuestCollector(LINUX_RULES, runner or ShellRunner(), status=status)
