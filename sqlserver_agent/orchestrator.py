#
# Copyright contributors to the sqlserver-agent project
#
"""One collection pass over the configured credentials.

The orchestrator owns the per-credential loop: validate, resolve the
secret, run the executor under the configured timeout, stamp and derive,
then merge into the pass's report. A bad credential is skipped and
counted; only configuration problems that make the whole pass
meaningless raise :class:`CollectionError`.
"""

from typing import Callable, List, Optional
import logging
import platform

from pydantic import ValidationError

from .aggregator import merge_details
from .agentstatus import AgentStatus, StatusCode
from .collectors.guest_collector import new_guest_collector
from .collectors.sql_collector import SQLCollector, add_physical_drive
from .exceptions import CollectionError, InvalidCredentialError
from .models import (
    CollectionKind, CollectionReport, Configuration, CredentialConfig, Detail,
    InstanceProperties, SQLConfiguration,
)

logger = logging.getLogger("sqlagent.orchestrator")

REMOTE_COLLECTION_UNSUPPORTED = (
    "remote collection is not supported by this agent; collect from the target host "
    "itself or turn off the remote_collection flag"
)


def validate_guest_credential(cred: CredentialConfig) -> None:
    """Raise :class:`InvalidCredentialError` if ``cred`` cannot drive guest collection."""
    missing = [name for name in ("instance_id", "instance_name") if not getattr(cred, name)]
    if missing:
        raise InvalidCredentialError(f"missing {', '.join(missing)}")
    if cred.remote_target:
        raise InvalidCredentialError("remote targets are not supported")


def validate_sql_target(cred: CredentialConfig, target: SQLConfiguration) -> None:
    """Raise :class:`InvalidCredentialError` if ``target`` cannot be collected."""
    validate_guest_credential(cred)
    missing = [name for name in ("host", "user_name", "secret_name") if not getattr(target, name)]
    if target.port_number <= 0:
        missing.append("port_number")
    if missing:
        raise InvalidCredentialError(f"missing {', '.join(missing)}")


def _connect_sql(target: SQLConfiguration, password: str, timeout: float, windows: bool,
                 status: Optional[AgentStatus]) -> SQLCollector:
    return SQLCollector.connect(target.host, target.user_name, password, target.port_number,
                                timeout, windows, status=status)


class CollectionOrchestrator:
    def __init__(self, config: Configuration, instance_properties: InstanceProperties,
                 secrets, status: AgentStatus,
                 guest_collector_factory: Callable = new_guest_collector,
                 sql_collector_factory: Callable = _connect_sql,
                 windows: Optional[bool] = None):
        self.config = config
        self.instance_properties = instance_properties
        self.secrets = secrets
        self.status = status
        self.guest_collector_factory = guest_collector_factory
        self.sql_collector_factory = sql_collector_factory
        self.windows = platform.system() == "Windows" if windows is None else windows

    def run(self, kind: CollectionKind, credentials: Optional[List[CredentialConfig]] = None,
            timeout: Optional[float] = None) -> Optional[CollectionReport]:
        """Run one pass; ``None`` means the kind is disabled."""
        if not self.config.enabled(kind):
            logger.info("Collection disabled in configuration", extra={"kind": kind.value})
            return None
        if self.config.remote_collection:
            raise CollectionError(REMOTE_COLLECTION_UNSUPPORTED)
        if credentials is None:
            credentials = self.config.credential_configuration
        if not credentials:
            raise CollectionError("empty credentials")
        if timeout is None:
            timeout = self.config.collection_timeout_seconds

        logger.info("Collection starts", extra={"kind": kind.value})
        self.status.action(StatusCode.COLLECTION_STARTED)
        if kind is CollectionKind.OS:
            # guest facts describe the local host, so only the first credential matters
            details = self._collect_guest(credentials[0], timeout)
        else:
            details = self._collect_sql(credentials, timeout)
        logger.info("Collection ends", extra={"kind": kind.value, "details": len(details)})

        try:
            return CollectionReport(instance_properties=self.instance_properties, kind=kind, details=details)
        except ValidationError as e:
            raise CollectionError(f"failed to build {kind.value} report: {e}") from e

    def _collect_guest(self, cred: CredentialConfig, timeout: float) -> List[Detail]:
        try:
            validate_guest_credential(cred)
        except InvalidCredentialError as e:
            logger.error("Invalid credential configuration", extra={
                "instance_name": cred.instance_name, "error": str(e)})
            self.status.error(StatusCode.INVALID_CONFIGURATIONS)
            return []
        collector = self.guest_collector_factory(self.status)
        return merge_details([], [collector.collect_guest_rules(timeout)])

    def _collect_sql(self, credentials: List[CredentialConfig], timeout: float) -> List[Detail]:
        details: List[Detail] = []
        for cred in credentials:
            for target in cred.sql_targets():
                collected = self._collect_sql_target(cred, target, timeout)
                if collected:
                    details = merge_details(details, collected)
        return details

    def _collect_sql_target(self, cred: CredentialConfig, target: SQLConfiguration,
                            timeout: float) -> Optional[List[Detail]]:
        context = {"instance_name": cred.instance_name, "host": target.host, "port": target.port_number}
        try:
            validate_sql_target(cred, target)
        except InvalidCredentialError as e:
            logger.error("Invalid credential configuration", extra={**context, "error": str(e)})
            self.status.error(StatusCode.INVALID_CONFIGURATIONS)
            return None

        try:
            password = self.secrets.resolve(target.secret_name)
        except Exception as e:
            logger.error("Failed to get secret value", extra={**context, "error": str(e)})
            self.status.error(StatusCode.SECRET_VALUE)
            return None

        windows = self.windows and not cred.linux_hosted
        try:
            collector = self.sql_collector_factory(target, password, timeout, windows, self.status)
        except Exception as e:
            logger.error("Failed to run sql collection", extra={**context, "error": str(e)})
            self.status.error(StatusCode.SQL_COLLECTION_FAILURE)
            return None
        with collector:
            details = collector.collect_master_rules()

        port = str(target.port_number)
        for detail in details:
            for field in detail.fields:
                field["host_name"] = target.host
                field["port_number"] = port
        return add_physical_drive(details, windows)
