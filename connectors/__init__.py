"""Provider connectors - Business Central, Dataverse (Premium) and Microsoft Graph (Planner).

Each provider client is built on ``ApiClient``:
- Client-credentials OAuth with a cached bearer token
- Shared retry wrapper (429/503/504, Retry-After)
- Typed exceptions carrying method, sanitized path and status
- ``@odata.nextLink`` paging

The sync engine depends only on the client methods, so tests can swap in
fakes with the same shape.
"""

from connectors.auth import AccessToken, ClientCredentialsAuth
from connectors.base import ApiClient, escape_odata_string
from connectors.errors import (
    ConnectorApiError,
    ConnectorAuthError,
    ConnectorNotFoundError,
    ConnectorRateLimitError,
    ConnectorValidationError,
    BCApiError,
    DataverseApiError,
    GraphApiError,
    SyncSetupError,
    TokenError,
    is_not_found_error,
)

__all__ = [
    # Auth
    "AccessToken",
    "ClientCredentialsAuth",
    # Base client
    "ApiClient",
    "escape_odata_string",
    # Errors
    "ConnectorApiError",
    "ConnectorAuthError",
    "ConnectorNotFoundError",
    "ConnectorRateLimitError",
    "ConnectorValidationError",
    "BCApiError",
    "DataverseApiError",
    "GraphApiError",
    "SyncSetupError",
    "TokenError",
    "is_not_found_error",
]
