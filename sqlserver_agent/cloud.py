"""
Copyright contributors to the sqlserver-agent project
"""

"""Google Cloud collaborators.

* instance identity from the GCE metadata server
* secret resolution, from Secret Manager or from a local JSON secrets
  file (useful on test machines)
* the Workload Manager client that receives collected reports

Authenticated calls use ``google.auth`` application default credentials
through an ``AuthorizedSession``.
"""

from typing import Any, Dict, Optional
import base64
import json
import logging

import google.auth
from google.auth import exceptions as auth_exceptions
from google.auth.transport.requests import AuthorizedSession
import requests

from .exceptions import CollectionError, DeliveryError, SecretResolutionError
from .models import CollectionReport, InstanceProperties
from .settings import AGENT_VERSION, SETTINGS, Settings

logger = logging.getLogger("sqlagent.cloud")

CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
METADATA_HEADERS = {"Metadata-Flavor": "Google"}


def _authorized_session() -> AuthorizedSession:
    credentials, _ = google.auth.default(scopes=[CLOUD_PLATFORM_SCOPE])
    return AuthorizedSession(credentials)


def fetch_instance_properties(metadata_url: str = SETTINGS.metadata_url,
                              session: Optional[requests.Session] = None,
                              timeout: float = 5.0) -> InstanceProperties:
    """Read the identity of the local instance from the metadata server."""
    session = session or requests.Session()

    def get(path: str) -> str:
        resp = session.get(f"{metadata_url}/{path}", headers=METADATA_HEADERS, timeout=timeout)
        resp.raise_for_status()
        return resp.text.strip()

    try:
        return InstanceProperties(
            project_id=get("project/project-id"),
            project_number=get("project/numeric-project-id"),
            instance_id=get("instance/id"),
            name=get("instance/name"),
            zone=get("instance/zone").rsplit("/", 1)[-1],
        )
    except requests.RequestException as e:
        raise CollectionError(f"failed to read instance metadata: {e}") from e


class FileSecretResolver:
    """Resolve secrets from a JSON file mapping secret names to values."""

    def __init__(self, path: str):
        self.path = path
        try:
            with open(path, "r", encoding="utf-8") as fh:
                self._secrets: Dict[str, Any] = json.load(fh)
        except (OSError, ValueError) as e:
            logger.warning("Failed to load secrets file", extra={"path": path, "error": str(e)})
            self._secrets = {}
        else:
            logger.info("Loaded secrets file", extra={"path": path, "count": len(self._secrets)})

    def resolve(self, name: str) -> str:
        if name not in self._secrets:
            raise SecretResolutionError(f"secret {name} not found in {self.path}")
        return str(self._secrets[name])


class SecretManagerResolver:
    """Resolve the latest version of a secret from Secret Manager."""

    def __init__(self, project_id: str, endpoint: str = SETTINGS.secret_manager_endpoint,
                 session: Optional[requests.Session] = None, timeout: float = 10.0):
        self.project_id = project_id
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self._session = session

    def resolve(self, name: str) -> str:
        url = f"{self.endpoint}/v1/projects/{self.project_id}/secrets/{name}/versions/latest:access"
        try:
            if self._session is None:
                self._session = _authorized_session()
            resp = self._session.get(url, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()["payload"]["data"]
            return base64.b64decode(data).decode("utf-8")
        except (auth_exceptions.GoogleAuthError, requests.RequestException,
                KeyError, ValueError) as e:
            raise SecretResolutionError(f"failed to access secret {name}: {e}") from e


def secret_resolver(project_id: str, settings: Settings = SETTINGS):
    if settings.secrets_file:
        return FileSecretResolver(settings.secrets_file)
    return SecretManagerResolver(project_id, endpoint=settings.secret_manager_endpoint)


def insight_payload(report: CollectionReport, agent_version: str = AGENT_VERSION) -> Dict[str, Any]:
    props = report.instance_properties
    return {
        "insight": {
            "instanceId": props.instance_id,
            "sqlserverValidation": {
                "agentVersion": agent_version,
                "instance": props.name,
                "projectId": props.project_id,
                "validationDetails": [
                    {"type": detail.name, "details": [{"fields": f} for f in detail.fields]}
                    for detail in report.details
                ],
            },
        }
    }


class WorkloadManagerClient:
    """Sends collection reports to the Workload Manager data warehouse."""

    def __init__(self, project_id: str, region: str, endpoint: str = SETTINGS.wlm_endpoint,
                 session: Optional[requests.Session] = None, timeout: float = 30.0):
        self.project_id = project_id
        self.region = region
        self.endpoint = endpoint.rstrip("/")
        self.timeout = timeout
        self._session = session

    def send(self, report: CollectionReport) -> Dict[str, Any]:
        url = f"{self.endpoint}/v1/projects/{self.project_id}/locations/{self.region}/insights:writeInsight"
        try:
            if self._session is None:
                self._session = _authorized_session()
            resp = self._session.post(url, json=insight_payload(report), timeout=self.timeout)
        except (auth_exceptions.GoogleAuthError, requests.RequestException) as e:
            raise DeliveryError(f"writeInsight request failed: {e}") from e
        if not 200 <= resp.status_code < 300:
            raise DeliveryError(f"writeInsight returned HTTP {resp.status_code}: {resp.text[:200]}")
        return resp.json() if resp.content else {}
