"""Replication status: metrics snapshot, JSON reports and the HTTP endpoint."""
from .metrics import MetricsReporter
from .server import create_app, start_status_server

__all__ = ["MetricsReporter", "create_app", "start_status_server"]
