"""Exception hierarchy shared by the provider clients.

Every non-2xx response is raised as a ``ConnectorApiError`` subclass whose
message reads ``{PREFIX} {METHOD} {path} -> {status}: {body}`` with the path
sanitized. Callers branch on the subclass (``ConnectorNotFoundError`` means
"skip this record") rather than parsing messages.
"""

from typing import Type

from core.http import HttpResponse, sanitize_url


class ConnectorApiError(Exception):
    """Base exception for provider API errors."""

    prefix = "API"

    def __init__(
        self,
        message: str,
        status_code: int = 0,
        method: str = "",
        path: str = "",
        response_body: str = "",
    ):
        super().__init__(message)
        self.status_code = status_code
        self.method = method
        self.path = path
        self.response_body = response_body

    @property
    def is_not_found(self) -> bool:
        return self.status_code == 404

    @classmethod
    def from_response(cls, method: str, path: str, response: HttpResponse) -> "ConnectorApiError":
        """Build the most specific exception for a failed response."""
        safe_path = sanitize_url(path)
        message = f"{cls.prefix} {method.upper()} {safe_path} -> {response.status}: {response.text}"
        error_cls = _subclass_for_status(cls, response.status)
        return error_cls(message, response.status, method.upper(), safe_path, response.text)


class ConnectorAuthError(ConnectorApiError):
    """Authentication or authorization failed (401/403)."""


class ConnectorNotFoundError(ConnectorApiError):
    """Resource not found (404)."""


class ConnectorRateLimitError(ConnectorApiError):
    """Rate limit still exceeded after retries (429)."""


class ConnectorValidationError(ConnectorApiError):
    """Request rejected by the provider (400)."""


class TokenError(ConnectorApiError):
    """Client-credentials token request failed."""

    prefix = "TOKEN"


# =============================================================================
# Provider specialisations
# =============================================================================

class BCApiError(ConnectorApiError):
    prefix = "BC"


class BCAuthError(BCApiError, ConnectorAuthError):
    pass


class BCNotFoundError(BCApiError, ConnectorNotFoundError):
    pass


class BCRateLimitError(BCApiError, ConnectorRateLimitError):
    pass


class BCValidationError(BCApiError, ConnectorValidationError):
    pass


class DataverseApiError(ConnectorApiError):
    prefix = "Dataverse"


class DataverseAuthError(DataverseApiError, ConnectorAuthError):
    pass


class DataverseNotFoundError(DataverseApiError, ConnectorNotFoundError):
    pass


class DataverseRateLimitError(DataverseApiError, ConnectorRateLimitError):
    pass


class DataverseValidationError(DataverseApiError, ConnectorValidationError):
    pass


class GraphApiError(ConnectorApiError):
    prefix = "Graph"


class GraphAuthError(GraphApiError, ConnectorAuthError):
    pass


class GraphNotFoundError(GraphApiError, ConnectorNotFoundError):
    pass


class GraphRateLimitError(GraphApiError, ConnectorRateLimitError):
    pass


class GraphValidationError(GraphApiError, ConnectorValidationError):
    pass


_STATUS_KINDS = {
    400: ConnectorValidationError,
    401: ConnectorAuthError,
    403: ConnectorAuthError,
    404: ConnectorNotFoundError,
    429: ConnectorRateLimitError,
}


def _subclass_for_status(base: Type[ConnectorApiError], status: int) -> Type[ConnectorApiError]:
    kind = _STATUS_KINDS.get(status)
    if kind is None:
        return base
    for candidate in base.__subclasses__():
        if issubclass(candidate, kind):
            return candidate
    return base


def is_not_found_error(error: BaseException) -> bool:
    """True for 404s, including errors raised as plain messages (``-> 404``)."""
    if isinstance(error, ConnectorApiError):
        return error.status_code == 404
    return "-> 404" in str(error)


class SyncSetupError(Exception):
    """A top-level setup failure that must propagate to the caller."""
