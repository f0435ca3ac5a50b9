"""
Copyright contributors to the sqlserver-agent project
"""

"""Agent settings using Pydantic and dotenv.

This module loads environment variables from a `.env` file (if present)
and exposes a `Settings` object. These are process-level values (file
locations and service endpoints) as opposed to the collection
configuration, which lives in the JSON configuration file loaded by
:mod:`sqlserver_agent.configuration`.
"""

from pydantic import BaseModel
from dotenv import load_dotenv
import os

# Load environment variables from a .env file if present
load_dotenv()

SERVICE_NAME = "google-cloud-sql-server-agent"
SERVICE_DISPLAY_NAME = "Google Cloud Agent for SQL Server"
AGENT_VERSION = "1.2.0"


class Settings(BaseModel):
    """Process-wide settings for the agent.

    Attributes
    ----------
    config_path : str
        Path to the JSON collection configuration. Defaults to
        ``/etc/google-cloud-sql-server-agent/configuration.json``.
    log_dir : str
        Directory the agent writes its own log file to.
    output_dir : str
        Directory one-shot collections persist their JSON results to.
        Defaults to ``log_dir``, next to the agent's log file.
    secrets_file : str
        Optional path to a JSON file mapping secret names to values.
        When empty, secrets are read from Secret Manager.
    wlm_endpoint : str
        Base URL of the Workload Manager data warehouse API.
    metadata_url : str
        Base URL of the GCE metadata server.
    secret_manager_endpoint : str
        Base URL of the Secret Manager API.
    """

    config_path: str = os.getenv(
        "SQLSERVER_AGENT_CONFIG", "/etc/google-cloud-sql-server-agent/configuration.json"
    )
    log_dir: str = os.getenv("SQLSERVER_AGENT_LOG_DIR", "/var/log/google-cloud-sql-server-agent")
    output_dir: str = os.getenv("SQLSERVER_AGENT_OUTPUT_DIR", log_dir)
    secrets_file: str = os.getenv("SECRETS_FILE", "")
    wlm_endpoint: str = os.getenv("WLM_ENDPOINT", "https://workloadmanager-datawarehouse.googleapis.com")
    metadata_url: str = os.getenv("GCE_METADATA_URL", "http://metadata.google.internal/computeMetadata/v1")
    secret_manager_endpoint: str = os.getenv("SECRET_MANAGER_ENDPOINT", "https://secretmanager.googleapis.com")


# Expose a singleton settings object for convenient import
SETTINGS = Settings()
