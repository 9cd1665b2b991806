"""Multi-agent coding workflow orchestrator."""

__version__ = "0.1.0"
