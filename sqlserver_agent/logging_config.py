#
# Copyright contributors to the sqlserver-agent project
#
from __future__ import annotations
import logging
import os
import re
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
LOG_FILE_NAME = "sqlserver-agent.log"


# attributes every LogRecord carries; anything else arrived through ``extra``
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", logging.INFO, "", 0, "", None, None))) | {
    "message", "asctime", "taskName",
}


class ContextFormatter(logging.Formatter):
    """Append the ``extra={...}`` context of a record as ``key=value`` pairs."""

    def formatMessage(self, record: logging.LogRecord) -> str:
        text = super().formatMessage(record)
        context = [
            f"{k}={v}" for k, v in record.__dict__.items()
            if k not in _RECORD_ATTRS and not k.startswith("_")
        ]
        if context:
            text = f"{text} {' '.join(context)}"
        return text


class SensitiveDataFilter(logging.Filter):
    """Redact sensitive values in log records.

    - Mask keys named like password, token, secret, key, authorization
    - Scrub URIs with user:pass@ to user:***@ form
    - Scrub ``password=...;`` fragments of connection strings
    """

    _sensitive_key_re = re.compile(r"(pass(word)?|token|secret|key|authorization|auth|pwd)", re.IGNORECASE)
    _uri_creds_re = re.compile(r"(://[^/\s:@]+:)([^@\s]+)(@)")
    _conn_str_re = re.compile(r"((?:password|pwd)\s*=\s*)([^;\s]+)", re.IGNORECASE)

    def _scrub_value(self, value: str) -> str:
        masked = self._uri_creds_re.sub(r"\1***\3", value)
        masked = self._conn_str_re.sub(r"\1***", masked)
        return masked

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = self._scrub_value(record.msg)
        for k, v in list(record.__dict__.items()):
            if k in ("msg", "args"):
                continue
            if self._sensitive_key_re.search(k) and isinstance(v, str):
                record.__dict__[k] = "***"
            elif isinstance(v, str):
                record.__dict__[k] = self._scrub_value(v)
            elif isinstance(v, dict):
                safe = {}
                for dk, dv in v.items():
                    if self._sensitive_key_re.search(str(dk)):
                        safe[dk] = "***"
                    elif isinstance(dv, str):
                        safe[dk] = self._scrub_value(dv)
                    else:
                        safe[dk] = dv
                record.__dict__[k] = safe
        return True


def setup_logging(level: str = "INFO", log_dir: Optional[str] = None) -> logging.Logger:
    """Configure the root logger for the agent.

    Logs go to stderr and, when ``log_dir`` is writable, to
    ``<log_dir>/sqlserver-agent.log``. Calling this again (for example
    once the configuration file has been read) only changes the level.
    """
    root = logging.getLogger()
    root.setLevel(_parse_level(level))
    if getattr(root, "_sqlagent_configured", False):
        return root

    redact = SensitiveDataFilter()
    formatter = ContextFormatter(LOG_FORMAT)

    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    stream.addFilter(redact)
    root.addHandler(stream)

    if log_dir:
        try:
            os.makedirs(log_dir, exist_ok=True)
            file_handler = logging.FileHandler(os.path.join(log_dir, LOG_FILE_NAME), encoding="utf-8")
        except OSError as e:
            root.warning("Log directory is not writable; logging to stderr only",
                         extra={"path": log_dir, "error": str(e)})
        else:
            file_handler.setFormatter(formatter)
            file_handler.addFilter(redact)
            root.addHandler(file_handler)

    root._sqlagent_configured = True  # type: ignore[attr-defined]
    return root


def _parse_level(level: str) -> int:
    value = logging.getLevelName(str(level).upper())
    return value if isinstance(value, int) else logging.INFO
