"""Primary failover state machine."""
from .orchestrator import FailoverOrchestrator

__all__ = ["FailoverOrchestrator"]
