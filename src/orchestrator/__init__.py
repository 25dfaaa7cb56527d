"""DockerFleet orchestrator - keeps Docker hosts reachable over SSH in sync."""

__version__ = "0.1.0"
