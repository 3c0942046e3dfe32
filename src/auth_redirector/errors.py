"""Error taxonomy for the authentication pipeline.

Each error carries the HTTP status it maps to. Components raise these;
``AuthPipeline.handle`` is the only place that turns them into responses.
"""

from __future__ import annotations


class RedirectorError(Exception):
    """Base class for failures that terminate a login attempt."""

    status_code: int = 500

    def __init__(self, message: str, *, detail: str | None = None) -> None:
        super().__init__(message)
        self.public_message = message
        # Extra operator-facing context for the log line (never sent to the client).
        self.detail = detail


class ClientInputError(RedirectorError):
    """Malformed client input such as a bad Forwarded header."""

    status_code = 400


class PolicyDeniedError(RedirectorError):
    """The identity was rejected by the email policy."""

    status_code = 403


class UpstreamProviderError(RedirectorError):
    """The OAuth2 provider failed the code exchange or profile fetch."""

    status_code = 500


class BackendUnavailableError(RedirectorError):
    """The backend identity service could not be reached or sent nothing back."""

    status_code = 500


class ConfigurationFault(RedirectorError):
    """An operator-facing fault, e.g. the provider did not echo ``state``."""

    status_code = 500
