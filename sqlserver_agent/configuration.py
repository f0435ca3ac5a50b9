#
# Copyright contributors to the sqlserver-agent project
#
import json
import logging
from typing import Optional

from pydantic import ValidationError

from .exceptions import ConfigurationError
from .models import Configuration

logger = logging.getLogger("sqlagent.config")


def default_configuration() -> Configuration:
    return Configuration()


def load_configuration(path: str) -> Configuration:
    """Read the JSON collection configuration at ``path``.

    A missing file is not fatal: the defaults are returned and the
    problem is logged. A file that exists but cannot be read or parsed
    raises :class:`ConfigurationError`, since running with silently
    ignored credentials would be worse than not running.
    """
    try:
        with open(path, "r", encoding="utf-8") as fh:
            raw = fh.read()
    except FileNotFoundError:
        logger.error("Configuration file not found; using default configuration", extra={"path": path})
        return default_configuration()
    except OSError as e:
        raise ConfigurationError(f"failed to read configuration file {path}: {e}") from e

    try:
        data = json.loads(raw) if raw.strip() else {}
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"configuration file {path} is not valid JSON: {e}") from e

    try:
        return Configuration.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"configuration file {path} is invalid: {e}") from e


def try_load_configuration(path: str) -> Optional[Configuration]:
    """Reload the configuration between collection cycles.

    Errors are logged and ``None`` returned so that the caller keeps its
    previous configuration.
    """
    try:
        return load_configuration(path)
    except ConfigurationError as e:
        logger.error("Failed to reload configuration", extra={"path": path, "error": str(e)})
        return None
