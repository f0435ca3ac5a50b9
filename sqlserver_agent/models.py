#
# Copyright contributors to the sqlserver-agent project
#

from enum import Enum
from pydantic import BaseModel, Field
from typing import Dict, List, Optional


UNKNOWN = "unknown"


class CollectionKind(str, Enum):
    """The two collection passes the agent runs."""

    OS = "os"
    SQL = "sql"


class SQLConfiguration(BaseModel):
    """Connection info for one SQL Server instance on the host.

    ``host`` may be left empty, in which case the owning credential's
    host is used.
    """

    host: Optional[str] = None
    user_name: Optional[str] = None
    secret_name: Optional[str] = None
    port_number: int = 1433


class CredentialConfig(BaseModel):
    """Per-target connection parameters.

    Attributes
    ----------
    instance_id, instance_name : str
        Identify the compute instance the credential belongs to. Both
        are required for a credential to be considered valid.
    host, user_name, secret_name, port_number
        The SQL Server connection used when ``sql_configurations`` is
        empty. ``secret_name`` references the password in the secret
        store; plaintext passwords never appear in configuration.
    remote_target : bool
        The credential describes a machine other than the local host.
        Such credentials are rejected by this agent.
    linux_hosted : bool
        The target runs SQL Server on Linux.
    sql_configurations : List[SQLConfiguration]
        Optional list of SQL Server instances on the same host.
    """

    instance_id: Optional[str] = None
    instance_name: Optional[str] = None
    host: Optional[str] = None
    user_name: Optional[str] = None
    secret_name: Optional[str] = None
    port_number: int = 1433
    remote_target: bool = False
    linux_hosted: bool = False
    sql_configurations: List[SQLConfiguration] = Field(default_factory=list)

    def sql_targets(self) -> List[SQLConfiguration]:
        """Return the SQL Server instances this credential points at."""
        if not self.sql_configurations:
            return [SQLConfiguration(
                host=self.host,
                user_name=self.user_name,
                secret_name=self.secret_name,
                port_number=self.port_number,
            )]
        return [
            cfg if cfg.host else cfg.model_copy(update={"host": self.host})
            for cfg in self.sql_configurations
        ]


class CollectionConfiguration(BaseModel):
    collect_guest_os_metrics: bool = True
    guest_os_metrics_collection_interval_in_seconds: int = 3600
    collect_sql_metrics: bool = True
    sql_metrics_collection_interval_in_seconds: int = 3600


class Configuration(BaseModel):
    """Collection configuration read from ``configuration.json``."""

    collection_configuration: CollectionConfiguration = Field(default_factory=CollectionConfiguration)
    credential_configuration: List[CredentialConfig] = Field(default_factory=list)
    log_level: str = "INFO"
    collection_timeout_seconds: int = 10
    max_retries: int = 3
    retry_interval_in_seconds: int = 3600
    remote_collection: bool = False
    disable_log_usage: bool = False

    def enabled(self, kind: CollectionKind) -> bool:
        if kind is CollectionKind.OS:
            return self.collection_configuration.collect_guest_os_metrics
        return self.collection_configuration.collect_sql_metrics

    def interval(self, kind: CollectionKind) -> int:
        if kind is CollectionKind.OS:
            return self.collection_configuration.guest_os_metrics_collection_interval_in_seconds
        return self.collection_configuration.sql_metrics_collection_interval_in_seconds


class InstanceProperties(BaseModel):
    """Identity of the instance reporting the data."""

    project_id: str
    project_number: Optional[str] = None
    instance_id: str
    name: str
    zone: Optional[str] = None

    @property
    def region(self) -> str:
        if not self.zone:
            return ""
        return self.zone.rsplit("-", 1)[0]


class Detail(BaseModel):
    """One named category of collected facts.

    The order of ``fields`` is significant and is preserved by merges.
    """

    name: str
    fields: List[Dict[str, str]] = Field(default_factory=list)


class CollectionReport(BaseModel):
    """The unit handed to the delivery pipeline, built fresh per pass."""

    instance_properties: InstanceProperties
    kind: CollectionKind
    details: List[Detail] = Field(default_factory=list)
