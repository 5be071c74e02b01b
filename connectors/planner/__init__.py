"""Microsoft Graph Planner connector package (legacy sync mode)."""

from connectors.planner.graph_client import GraphClient

__all__ = ["GraphClient"]
