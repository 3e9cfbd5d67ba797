class SafePathError(Exception):
    """Base class for safest-path failures."""


class InvalidInputError(SafePathError):
    """Coordinates are missing, non-numeric or out of range."""


class ProviderError(SafePathError):
    def __init__(self, message: str, status_code: int = None, body: str = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class ProviderUnavailableError(ProviderError):
    """Transient routing provider failure (timeout, 429, 5xx, bad body)."""


class ProviderRejectedError(ProviderError):
    """The provider refused the request shape; retrying it will not help."""


class NoRouteFoundError(SafePathError):
    """No strategy produced a route."""


class RouteTimeoutError(SafePathError):
    """The computation did not finish within the end-to-end timeout."""
