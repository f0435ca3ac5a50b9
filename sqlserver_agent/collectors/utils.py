"""
Copyright contributors to the sqlserver-agent project
"""

from __future__ import annotations
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence
import subprocess

from ..models import UNKNOWN


def ok(data: Optional[Dict[str, Any]] = None, **extra: Any) -> Dict[str, Any]:
    resp: Dict[str, Any] = {"ok": True}
    if data:
        resp.update(data)
    if extra:
        resp.update(extra)
    return resp


def err(message: str, *, code: Optional[str] = None, **extra: Any) -> Dict[str, Any]:
    resp: Dict[str, Any] = {"ok": False, "error": {"message": message}}
    if code:
        resp["error"]["code"] = code
    if extra:
        resp.update(extra)
    return resp


def run_command(args: Sequence[str], timeout: float = 10.0) -> tuple[int, str, str]:
    """Run a local command and return exit code, stdout, stderr.

    The child is killed when ``timeout`` expires, in which case
    ``subprocess.TimeoutExpired`` propagates to the caller.
    """
    proc = subprocess.run(
        list(args),
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False,
    )
    return proc.returncode, proc.stdout, proc.stderr


def to_str(value: Any) -> str:
    """Render a scalar from a query result as a report value."""
    if value is None:
        return UNKNOWN
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return format(value, "f")
    return str(value)


def as_list(data: Any) -> List[Any]:
    """``ConvertTo-Json`` emits a bare object for single-row results."""
    if data is None:
        return []
    if isinstance(data, list):
        return data
    return [data]
