"""Dataverse (Premium) connector package."""

from connectors.dataverse.dataverse_client import DataverseClient, parse_entity_id_header

__all__ = ["DataverseClient", "parse_entity_id_header"]
