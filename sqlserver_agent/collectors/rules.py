"""
Copyright contributors to the sqlserver-agent project
"""

"""SQL Server master rules.

Each rule pairs a read-only T-SQL query with a function that turns the
raw result rows into field mappings. Column identity is positional and
known only to the extractor that goes with the query.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Sequence

from .utils import to_str

Row = Sequence[Any]
Fields = List[Dict[str, str]]

LOG_DISK_SEPARATION = "DB_LOG_DISK_SEPARATION"


@dataclass(frozen=True)
class Rule:
    name: str
    query: str
    fields: Callable[[List[Row]], Fields]


def _columns(*names: str) -> Callable[[List[Row]], Fields]:
    """Extractor mapping each row positionally onto ``names``."""
    def extract(rows: List[Row]) -> Fields:
        return [{name: to_str(row[i]) for i, name in enumerate(names)} for row in rows]
    return extract


def _index_fragmentation(rows: List[Row]) -> Fields:
    # the query returns a row only when a fragmented index exists
    return [{"found_index_fragmentation": "1" if rows else "0"}]


def _single_value(name: str) -> Callable[[List[Row]], Fields]:
    def extract(rows: List[Row]) -> Fields:
        if not rows:
            return [{name: to_str(None)}]
        return [{name: to_str(rows[0][0])}]
    return extract


MASTER_RULES: List[Rule] = [
    Rule(
        name=LOG_DISK_SEPARATION,
        query="""
        SELECT mf.type_desc, d.name, mf.physical_name, mf.state_desc, mf.size
        FROM sys.master_files mf
        INNER JOIN sys.databases d ON mf.database_id = d.database_id
        """,
        fields=_columns("type", "db_name", "physical_name", "state", "size"),
    ),
    Rule(
        name="DB_MAX_PARALLELISM",
        query="SELECT value_in_use FROM sys.configurations WHERE name = 'max degree of parallelism'",
        fields=_single_value("maxDop"),
    ),
    Rule(
        name="DB_TRANSACTION_LOG_HANDLING",
        query="""
        SELECT d.name,
               DATEDIFF(HOUR, MAX(b.backup_finish_date), GETDATE()) AS backup_age_in_hours,
               MAX(m.growth) AS max_growth,
               d.recovery_model_desc
        FROM sys.databases d
        INNER JOIN sys.master_files m ON d.database_id = m.database_id AND m.type = 1
        LEFT JOIN msdb.dbo.backupset b ON b.database_name = d.name AND b.type = 'L'
        GROUP BY d.name, d.recovery_model_desc
        """,
        fields=_columns("db_name", "backup_age_in_hours", "max_growth", "recovery_model"),
    ),
    Rule(
        name="DB_VIRTUAL_LOG_FILE_COUNT",
        query="""
        SELECT s.name, COUNT(l.database_id) AS vlf_count, SUM(l.vlf_size_mb) AS vlf_size_in_mb
        FROM sys.databases s
        CROSS APPLY sys.dm_db_log_info(s.database_id) l
        GROUP BY s.name
        """,
        fields=_columns("db_name", "vlf_count", "vlf_size_in_mb"),
    ),
    Rule(
        name="DB_BUFFER_POOL_EXTENSION",
        query="SELECT path, state_description, current_size_in_kb FROM sys.dm_os_buffer_pool_extension_configuration",
        fields=_columns("path", "state", "size_in_kb"),
    ),
    Rule(
        name="DB_MAX_SERVER_MEMORY",
        query="""
        SELECT c.name, c.value, c.value_in_use, i.physical_memory_kb
        FROM sys.configurations c
        CROSS JOIN sys.dm_os_sys_info i
        WHERE c.name = 'max server memory (MB)'
        """,
        fields=_columns("name", "value", "value_in_use", "physical_memory_kb"),
    ),
    Rule(
        name="DB_INDEX_FRAGMENTATION",
        query="""
        SELECT TOP 1 1 AS found_index_fragmentation
        FROM sys.databases d
        CROSS APPLY sys.dm_db_index_physical_stats(d.database_id, NULL, NULL, NULL, 'LIMITED') s
        WHERE s.avg_fragmentation_in_percent > 95 AND s.page_count > 1000
        """,
        fields=_index_fragmentation,
    ),
    Rule(
        name="DB_TABLE_INDEX_COMPRESSION",
        query="SELECT COUNT(*) FROM sys.partitions p WHERE p.data_compression <> 0",
        fields=_single_value("numOfPartitionsWithCompressionEnabled"),
    ),
    Rule(
        name="INSTANCE_METRICS",
        query="""
        SELECT SERVERPROPERTY('productversion'), SERVERPROPERTY('productlevel'),
               SERVERPROPERTY('edition'), cpu_count, hyperthread_ratio,
               physical_memory_kb, virtual_memory_kb, socket_count,
               cores_per_socket, numa_node_count
        FROM sys.dm_os_sys_info
        """,
        fields=_columns(
            "product_version", "product_level", "edition", "cpu_count", "hyperthread_ratio",
            "physical_memory_kb", "virtual_memory_kb", "socket_count", "cores_per_socket",
            "numa_node_count",
        ),
    ),
    Rule(
        name="DB_BACKUP_POLICY",
        query="""
        SELECT DATEDIFF(DAY, MAX(backup_finish_date), GETDATE()) AS max_backup_age
        FROM msdb.dbo.backupset
        WHERE type = 'D'
        """,
        fields=_single_value("maxBackupAge"),
    ),
]
