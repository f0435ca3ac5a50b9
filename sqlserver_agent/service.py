#
# Copyright contributors to the sqlserver-agent project
#
from __future__ import annotations
from typing import Any, Callable, Dict, Optional
import argparse
import logging
import signal
import sys
import threading
import time

from .agentstatus import AgentStatus, StatusCode
from .cloud import WorkloadManagerClient, fetch_instance_properties, secret_resolver
from .collectors.utils import err, ok
from .configuration import load_configuration, try_load_configuration
from .delivery import persist_collected_data, send_request
from .exceptions import CollectionError, ConfigurationError
from .logging_config import setup_logging
from .models import CollectionKind, Configuration
from .orchestrator import CollectionOrchestrator
from .settings import AGENT_VERSION, SERVICE_DISPLAY_NAME, SERVICE_NAME, SETTINGS

logger = logging.getLogger("sqlagent.service")


def run_collection(kind: CollectionKind, cfg: Configuration, onetime: bool, *,
                   status: AgentStatus,
                   orchestrator: Optional[CollectionOrchestrator] = None,
                   client: Any = None,
                   output_dir: Optional[str] = None,
                   sleep: Callable[[float], None] = time.sleep) -> Dict[str, Any]:
    """Run one pass of ``kind`` and persist or deliver its report.

    Never raises for collection or delivery problems; the outcome is
    returned as an ``ok``/``err`` envelope so that a scheduler can simply
    try again next cycle.
    """
    try:
        if orchestrator is None:
            props = fetch_instance_properties()
            orchestrator = CollectionOrchestrator(cfg, props, secret_resolver(props.project_id), status)
        report = orchestrator.run(kind)
    except CollectionError as e:
        logger.error("Failed to complete collection", extra={"kind": kind.value, "error": str(e)})
        status.error(StatusCode.COLLECTION_FAILURE)
        return err(str(e), code="COLLECTION_ERROR", kind=kind.value)

    if report is None:
        return ok({"kind": kind.value, "skipped": True})

    if onetime:
        try:
            path = persist_collected_data(report, output_dir or SETTINGS.output_dir)
        except OSError as e:
            logger.error("Failed to persist collected data", extra={"kind": kind.value, "error": str(e)})
            return err(str(e), code="PERSIST_ERROR", kind=kind.value)
        return ok({"kind": kind.value, "details": len(report.details), "path": path})

    if not report.details:
        logger.warning("Nothing collected; delivering an empty report", extra={"kind": kind.value})

    props = report.instance_properties
    logger.debug("Sending collected data to workload manager", extra={
        "kind": kind.value, "source": props.name, "target": props.name})
    client = client or WorkloadManagerClient(props.project_id, props.region)
    if not send_request(client, report, cfg.max_retries, cfg.retry_interval_in_seconds,
                        status=status, sleep=sleep):
        return err("failed to deliver collected data", code="DELIVERY_ERROR", kind=kind.value)
    return ok({"kind": kind.value, "details": len(report.details), "delivered": True})


def os_collection(cfg: Configuration, onetime: bool, **kwargs: Any) -> Dict[str, Any]:
    """Collect guest OS facts for the local host."""
    return run_collection(CollectionKind.OS, cfg, onetime, **kwargs)


def sql_collection(cfg: Configuration, onetime: bool, **kwargs: Any) -> Dict[str, Any]:
    """Collect SQL Server facts for every configured credential."""
    return run_collection(CollectionKind.SQL, cfg, onetime, **kwargs)


class CollectionService:
    """Runs both collection kinds periodically, one pass at a time.

    The configuration is re-read before every cycle so that edits take
    effect without a restart; an unreadable file keeps the previous one.
    """

    def __init__(self, config_path: str, status: AgentStatus,
                 initial_config: Optional[Configuration] = None,
                 collect: Callable[..., Dict[str, Any]] = run_collection,
                 clock: Callable[[], float] = time.monotonic):
        self.config_path = config_path
        self.status = status
        self.config = initial_config if initial_config is not None else load_configuration(config_path)
        self._collect = collect
        self._clock = clock
        self._stop = threading.Event()
        self._next_due: Dict[CollectionKind, float] = {}

    def stop(self) -> None:
        self._stop.set()

    def run_pending(self) -> float:
        """Run every kind that is due and return seconds until the next one."""
        self.status.running()
        now = self._clock()
        for kind in CollectionKind:
            if self._next_due.get(kind, now) > now:
                continue
            self.config = try_load_configuration(self.config_path) or self.config
            try:
                result = self._collect(kind, self.config, False, status=self.status)
            except Exception as e:
                logger.exception("Collection cycle crashed", extra={"kind": kind.value, "error": str(e)})
                self.status.error(StatusCode.COLLECTION_FAILURE)
            else:
                if not result.get("ok"):
                    logger.error("Collection cycle failed",
                                 extra={"kind": kind.value, "error": result.get("error")})
            self._next_due[kind] = self._clock() + max(1, self.config.interval(kind))
        return max(0.0, min(self._next_due.values()) - self._clock())

    def run(self) -> None:
        logger.info("Collection service started", extra={"service": SERVICE_DISPLAY_NAME})
        while not self._stop.is_set():
            self._stop.wait(self.run_pending())
        logger.info("Collection service stopped", extra={"service": SERVICE_DISPLAY_NAME})


def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="sqlserver-agent",
        description="Collects SQL Server and guest OS facts and reports them to Workload Manager.",
    )
    parser.add_argument("--onetime", action="store_true",
                        help="collect once and write the results to local JSON files")
    parser.add_argument("--config", default=SETTINGS.config_path, help="path to configuration.json")
    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {AGENT_VERSION}")
    args = parser.parse_args(argv)

    setup_logging("INFO", SETTINGS.log_dir)
    try:
        cfg = load_configuration(args.config)
    except ConfigurationError as e:
        logger.critical("Failed to load configuration", extra={"path": args.config, "error": str(e)})
        return 1
    setup_logging(cfg.log_level)

    if args.onetime:
        status = AgentStatus(SERVICE_NAME, AGENT_VERSION, enabled=False)
        for collect in (os_collection, sql_collection):
            result = collect(cfg, True, status=status)
            if not result["ok"]:
                logger.error("Failed to complete collection", extra={"error": result["error"]})
        return 0

    status = AgentStatus(SERVICE_NAME, AGENT_VERSION, enabled=not cfg.disable_log_usage)
    service = CollectionService(args.config, status, initial_config=cfg)
    signal.signal(signal.SIGTERM, lambda signum, frame: service.stop())
    try:
        service.run()
    except KeyboardInterrupt:
        service.stop()
    return 0


if __name__ == "__main__":
    sys.exit(main())
