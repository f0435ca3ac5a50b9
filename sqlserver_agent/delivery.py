#
# Copyright contributors to the sqlserver-agent project
#
from typing import Callable, Optional
import json
import logging
import os
import time

from .agentstatus import AgentStatus, StatusCode
from .models import CollectionReport

logger = logging.getLogger("sqlagent.delivery")


def output_path(report: CollectionReport, directory: str) -> str:
    target = report.instance_properties.name or "localhost"
    return os.path.join(directory, f"{target}-{report.kind.value}.json")


def persist_collected_data(report: CollectionReport, directory: str) -> str:
    """Write the report's details to ``<directory>/<instance>-<kind>.json``."""
    path = output_path(report, directory)
    os.makedirs(directory, exist_ok=True)
    payload = {"details": [detail.model_dump() for detail in report.details]}
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2)
    logger.info("Persisted collected data", extra={"path": path, "details": len(report.details)})
    return path


def send_request(client, report: CollectionReport, max_retries: int, retry_interval: float,
                 status: Optional[AgentStatus] = None,
                 sleep: Callable[[float], None] = time.sleep) -> bool:
    """Deliver ``report`` through ``client.send``.

    Any exception counts as a failed attempt. At most ``max_retries + 1``
    attempts are made with ``retry_interval`` seconds between them.
    Returns whether the report was acknowledged; an unacknowledged
    report is dropped.
    """
    attempts = max(0, max_retries) + 1
    for attempt in range(1, attempts + 1):
        try:
            client.send(report)
        except Exception as e:
            logger.warning("Failed to send collected data", extra={
                "attempt": attempt, "attempts": attempts,
                "instance": report.instance_properties.name, "error": str(e)})
            if attempt < attempts:
                sleep(retry_interval)
            continue
        logger.info("Sent collected data", extra={
            "attempt": attempt, "instance": report.instance_properties.name,
            "kind": report.kind.value})
        return True

    logger.error("Dropping collected data after exhausting retries", extra={
        "attempts": attempts, "instance": report.instance_properties.name,
        "kind": report.kind.value})
    if status:
        status.error(StatusCode.DELIVERY_FAILURE)
    return False
