"""Rule registries and the executors that run them.

``sql_collector`` runs the SQL Server master rules over one connection;
``guest_collector`` runs the guest OS rules for the local platform.
"""
from . import guest_collector, guest_rules, rules, sql_collector, utils

__all__ = ["guest_collector", "guest_rules", "rules", "sql_collector", "utils"]
