"""
Copyright contributors to the sqlserver-agent project
"""

"""Guest OS rules for Windows and Linux hosts.

A guest rule is plain data: what to run, how to parse its output and
whether the parsed value is a reported fact or a lookup table consumed
by a derived rule. Rules never write shared state; the collector gathers
their return values and feeds lookup tables to derived rules explicitly.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple
import json
import re

from ..exceptions import QueryExecutionError
from ..models import UNKNOWN
from .utils import as_list

POWER_PROFILE_SETTING = "power_profile_setting"
LOCAL_SSD = "local_ssd"
DATA_DISK_ALLOCATION_UNITS = "data_disk_allocation_units"
GCBDR_AGENT_RUNNING = "gcbdr_agent_running"
LOGICAL_DISK_TO_PARTITION = "logical_disk_to_partition"
PHYSICAL_DISK_TO_TYPE = "physical_disk_to_type"

LOCAL_SSD_SIZE_MULTIPLE = 402653184000
SSD_MEDIA_TYPE = 4
HDD_MEDIA_TYPE = 3


class DiskType(str, Enum):
    LOCAL_SSD = "LOCAL-SSD"
    PERSISTENT_SSD = "PERSISTENT-SSD"
    OTHER = "OTHER"


class RuleKind(str, Enum):
    FACT = "fact"
    LOOKUP = "lookup"


@dataclass(frozen=True)
class GuestRule:
    name: str
    kind: RuleKind
    query: str
    parse: Callable[[str], Any]
    namespace: str = ""
    properties: Tuple[str, ...] = field(default_factory=tuple)

    @property
    def reported(self) -> bool:
        return self.kind is RuleKind.FACT


@dataclass(frozen=True)
class DerivedRule:
    name: str
    inputs: Tuple[str, ...]
    derive: Callable[..., Optional[str]]


def friendly_name_to_disk_type(friendly_name: str, size: int, media_type: int) -> str:
    """Determine disk type based on name, size and media type."""
    if friendly_name in ("nvme_card", "Google EphemeralDisk") and size % LOCAL_SSD_SIZE_MULTIPLE == 0:
        return DiskType.LOCAL_SSD.value
    if friendly_name == "Google PersistentDisk" and media_type == SSD_MEDIA_TYPE:
        return DiskType.PERSISTENT_SSD.value
    return DiskType.OTHER.value


def logical_disk_media_type(logical_to_physical: Mapping[str, str],
                            physical_to_type: Mapping[str, str]) -> Optional[str]:
    """Join the two disk lookup tables into ``{logical disk: disk type}`` JSON."""
    logical_to_type = {
        logical: physical_to_type[physical]
        for logical, physical in logical_to_physical.items()
        if physical in physical_to_type
    }
    if not logical_to_type:
        return None
    return json.dumps(logical_to_type, sort_keys=True)


LOCAL_SSD_RULE = DerivedRule(
    name=LOCAL_SSD,
    inputs=(LOGICAL_DISK_TO_PARTITION, PHYSICAL_DISK_TO_TYPE),
    derive=logical_disk_media_type,
)


def _json_rows(out: str) -> List[Dict[str, Any]]:
    if not out.strip():
        return []
    return as_list(json.loads(out))


# Windows (WMI through PowerShell)

_PARTITION_RE = re.compile(r'.*\\root\\cimv2:Win32_DiskPartition\.DeviceID="Disk #(.*), Partition #.*"')
_LOGICAL_DISK_RE = re.compile(r'.*\\root\\cimv2:Win32_LogicalDisk\.DeviceID="(.*)"')
_VOLUME_GUID_RE = re.compile(r".*Volume{.*}.*")


def _win_power_plan(out: str) -> str:
    rows = _json_rows(out)
    if not rows:
        raise QueryExecutionError("no active power plan found")
    return rows[0].get("ElementName") or UNKNOWN


def _win_logical_to_partition(out: str) -> Dict[str, str]:
    # Antecedent: \\HOST\root\cimv2:Win32_DiskPartition.DeviceID="Disk #0, Partition #1"
    # Dependent:  \\HOST\root\cimv2:Win32_LogicalDisk.DeviceID="C:"
    table: Dict[str, str] = {}
    for row in _json_rows(out):
        disk = _PARTITION_RE.match(row.get("Antecedent") or "")
        logical = _LOGICAL_DISK_RE.match(row.get("Dependent") or "")
        if disk and logical:
            table[logical.group(1)] = disk.group(1)
    return table


def _win_physical_to_type(out: str) -> Dict[str, str]:
    return {
        str(row.get("DeviceId")): friendly_name_to_disk_type(
            row.get("FriendlyName") or "", int(row.get("Size") or 0), int(row.get("MediaType") or 0))
        for row in _json_rows(out)
    }


def _win_allocation_units(out: str) -> str:
    volumes = [
        {"BlockSize": int(row.get("BlockSize") or 0), "Caption": row.get("Caption") or ""}
        for row in _json_rows(out)
        if not _VOLUME_GUID_RE.match(row.get("Caption") or "")
    ]
    return json.dumps(volumes)


def _any_rows(out: str) -> str:
    return "true" if _json_rows(out) else "false"


WINDOWS_RULES: List[GuestRule] = [
    GuestRule(
        name=POWER_PROFILE_SETTING,
        kind=RuleKind.FACT,
        namespace=r"root\cimv2\power",
        query="SELECT ElementName FROM Win32_PowerPlan WHERE IsActive = true",
        properties=("ElementName",),
        parse=_win_power_plan,
    ),
    GuestRule(
        name=LOGICAL_DISK_TO_PARTITION,
        kind=RuleKind.LOOKUP,
        namespace=r"root\cimv2",
        query="SELECT Antecedent, Dependent FROM Win32_LogicalDiskToPartition",
        properties=("Antecedent", "Dependent"),
        parse=_win_logical_to_partition,
    ),
    GuestRule(
        name=PHYSICAL_DISK_TO_TYPE,
        kind=RuleKind.LOOKUP,
        namespace=r"root\microsoft\windows\storage",
        query="SELECT DeviceId, FriendlyName, Size, MediaType FROM MSFT_PhysicalDisk",
        properties=("DeviceId", "FriendlyName", "Size", "MediaType"),
        parse=_win_physical_to_type,
    ),
    GuestRule(
        name=DATA_DISK_ALLOCATION_UNITS,
        kind=RuleKind.FACT,
        namespace=r"root\cimv2",
        query="SELECT Caption, BlockSize FROM Win32_Volume",
        properties=("BlockSize", "Caption"),
        parse=_win_allocation_units,
    ),
    GuestRule(
        name=GCBDR_AGENT_RUNNING,
        kind=RuleKind.FACT,
        namespace=r"root\cimv2",
        query="SELECT Caption FROM Win32_Process WHERE Name = 'udsagent.exe'",
        properties=("Caption",),
        parse=_any_rows,
    ),
]


# Linux (local shell commands)

_TUNED_RE = re.compile(r"Current active profile:\s*(\S+)")
_LINUX_MODEL_NAMES = {
    "PersistentDisk": "Google PersistentDisk",
    "EphemeralDisk": "Google EphemeralDisk",
}


def _lsblk_devices(out: str) -> List[Dict[str, Any]]:
    return json.loads(out).get("blockdevices") or []


def _linux_power_profile(out: str) -> str:
    m = _TUNED_RE.search(out)
    if not m:
        raise QueryExecutionError("no active tuned profile found")
    return m.group(1)


def _linux_mount_to_disk(out: str) -> Dict[str, str]:
    table: Dict[str, str] = {}
    for dev in _lsblk_devices(out):
        mount = dev.get("mountpoint")
        if not mount:
            continue
        if dev.get("type") == "disk":
            table[mount] = dev.get("name")
        elif dev.get("pkname"):
            table[mount] = dev["pkname"]
    return table


def _rotational(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip() not in ("0", "false")
    return bool(value)


def _linux_disk_to_type(out: str) -> Dict[str, str]:
    table: Dict[str, str] = {}
    for dev in _lsblk_devices(out):
        model = (dev.get("model") or "").strip()
        media_type = HDD_MEDIA_TYPE if _rotational(dev.get("rota")) else SSD_MEDIA_TYPE
        table[dev.get("name")] = friendly_name_to_disk_type(
            _LINUX_MODEL_NAMES.get(model, model), int(dev.get("size") or 0), media_type)
    return table


def _linux_allocation_units(out: str) -> str:
    volumes = []
    for line in out.splitlines():
        parts = line.strip().split(None, 1)
        if len(parts) != 2:
            continue
        volumes.append({"BlockSize": int(parts[0]), "Caption": parts[1]})
    return json.dumps(volumes)


def _linux_bool(out: str) -> str:
    return "true" if out.strip() == "true" else "false"


LINUX_RULES: List[GuestRule] = [
    GuestRule(
        name=POWER_PROFILE_SETTING,
        kind=RuleKind.FACT,
        query="tuned-adm active",
        parse=_linux_power_profile,
    ),
    GuestRule(
        name=LOGICAL_DISK_TO_PARTITION,
        kind=RuleKind.LOOKUP,
        query="lsblk -J -l -o NAME,PKNAME,MOUNTPOINT,TYPE",
        parse=_linux_mount_to_disk,
    ),
    GuestRule(
        name=PHYSICAL_DISK_TO_TYPE,
        kind=RuleKind.LOOKUP,
        query="lsblk -J -b -d -o NAME,SIZE,ROTA,MODEL",
        parse=_linux_disk_to_type,
    ),
    GuestRule(
        name=DATA_DISK_ALLOCATION_UNITS,
        kind=RuleKind.FACT,
        query='for m in $(findmnt -rn -t ext2,ext3,ext4,xfs -o TARGET); do stat -f -c "%S %n" "$m"; done',
        parse=_linux_allocation_units,
    ),
    GuestRule(
        name=GCBDR_AGENT_RUNNING,
        kind=RuleKind.FACT,
        query="pgrep -x udsagent >/dev/null && echo true || echo false",
        parse=_linux_bool,
    ),
]

DERIVED_RULES: List[DerivedRule] = [LOCAL_SSD_RULE]
