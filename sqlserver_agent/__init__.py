"""SQL Server host agent.

Collects guest OS and SQL Server configuration facts from the local
instance and reports them to Workload Manager, or writes them to local
JSON files in one-shot mode.
"""
from .settings import AGENT_VERSION as __version__

__all__ = ["__version__"]
