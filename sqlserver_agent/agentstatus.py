#
# Copyright contributors to the sqlserver-agent project
#
"""Usage and status reporting.

An :class:`AgentStatus` is created once at startup and passed to every
component that reports errors, so tests can inspect the recorded codes
instead of patching a module-level logger.
"""

from collections import Counter
from enum import Enum
import logging


class StatusCode(str, Enum):
    INVALID_CONFIGURATIONS = "invalid_configurations"
    SECRET_VALUE = "secret_value"
    SQL_COLLECTION_FAILURE = "sql_collection_failure"
    SQL_QUERY_EXECUTION = "sql_query_execution"
    GUEST_QUERY_EXECUTION = "guest_query_execution"
    GUEST_COLLECTION_TIMEOUT = "guest_collection_timeout"
    INVALID_JSON_FORMAT = "invalid_json_format"
    DELIVERY_FAILURE = "delivery_failure"
    COLLECTION_FAILURE = "collection_failure"
    COLLECTION_STARTED = "collection_started"


class AgentStatus:
    def __init__(self, service_name: str, version: str, enabled: bool = True):
        self.service_name = service_name
        self.version = version
        self.enabled = enabled
        self.errors: Counter = Counter()
        self.actions: Counter = Counter()
        self._logger = logging.getLogger("sqlagent.usage")

    def running(self) -> None:
        self._emit("RUNNING", None)

    def action(self, code: StatusCode) -> None:
        self.actions[code] += 1
        self._emit("ACTION", code)

    def error(self, code: StatusCode) -> None:
        self.errors[code] += 1
        self._emit("ERROR", code)

    def _emit(self, status: str, code) -> None:
        if not self.enabled:
            return
        self._logger.info(
            "usage %s", status,
            extra={"service": self.service_name, "version": self.version,
                   "code": code.value if code else None},
        )
