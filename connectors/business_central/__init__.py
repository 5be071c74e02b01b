"""Business Central Connector Package.

REST client for the custom ``plannerSync`` API pages (projects, project
tasks, change feed, sync queue) and BC webhook subscriptions.
"""

from connectors.business_central.bc_client import (
    BusinessCentralClient,
    clear_metadata_caches,
    pick_subscription_id,
)

__all__ = [
    "BusinessCentralClient",
    "clear_metadata_caches",
    "pick_subscription_id",
]
