"""OAuth2 authorization-code client for the upstream identity provider."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any
from urllib.parse import urlencode

import httpx

from auth_redirector.config import OAuthSettings
from auth_redirector.errors import UpstreamProviderError
from auth_redirector.utils.http import sanitize_log_text

_logger = logging.getLogger(__name__)

_MAX_PROVIDER_BODY_LOG: int = 1000
_MAX_PROVIDER_ERROR: int = 256


@dataclass(frozen=True)
class IdentityProfile:
    """Identity returned by a successful provider exchange."""

    subject_id: str
    email: str
    email_verified: bool = False
    name: str | None = None
    given_name: str | None = None
    family_name: str | None = None
    picture_url: str | None = None
    hosted_domain: str | None = None

    @classmethod
    def from_userinfo(cls, payload: dict[str, Any]) -> "IdentityProfile":
        """Build a profile from an OIDC or Google v2 userinfo payload."""
        subject_id = payload.get("sub") or payload.get("id")
        email = payload.get("email")
        if not subject_id or not email:
            raise UpstreamProviderError(
                "Identity provider returned a profile without id or email",
                detail=f"keys={sorted(payload)}",
            )
        verified = payload.get("email_verified", payload.get("verified_email", False))
        if isinstance(verified, str):
            verified = verified.strip().lower() == "true"
        return cls(
            subject_id=str(subject_id),
            email=str(email),
            email_verified=bool(verified),
            name=payload.get("name"),
            given_name=payload.get("given_name"),
            family_name=payload.get("family_name"),
            picture_url=payload.get("picture"),
            hosted_domain=payload.get("hd"),
        )


def _provider_error_text(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict) and payload.get("error"):
        error = payload["error"]
        if isinstance(error, dict):
            # Google APIs wrap errors as {"error": {"code": .., "message": ..}}.
            error = error.get("message") or error.get("status") or "error"
        description = payload.get("error_description")
        if description:
            return sanitize_log_text(f"{error}: {description}", limit=_MAX_PROVIDER_ERROR)
        return sanitize_log_text(error, limit=_MAX_PROVIDER_ERROR)
    return f"HTTP {response.status_code}"


class IdentityClient:
    """Credential wrapper bound to one canonical callback URL.

    OAuth2 requires the ``redirect_uri`` of the authorize step and the
    token step to match exactly, so each callback URL gets its own client.
    """

    def __init__(self, config: OAuthSettings, callback_url: str) -> None:
        self._config = config
        self.callback_url = callback_url

    def authorize_url(self, state: str) -> str:
        """Build the provider authorization URL carrying ``state``."""
        params = {
            "response_type": "code",
            "client_id": self._config.client_id,
            "redirect_uri": self.callback_url,
            "scope": " ".join(self._config.scopes),
            "state": state,
        }
        return f"{self._config.authorize_endpoint}?{urlencode(params)}"

    async def exchange(self, code: str) -> IdentityProfile:
        """Exchange an authorization code for the user's profile."""
        token_data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": self.callback_url,
            "client_id": self._config.client_id,
            "client_secret": self._config.client_secret,
        }

        async with httpx.AsyncClient(timeout=self._config.timeout_seconds) as client:
            try:
                token_resp = await client.post(
                    self._config.token_endpoint,
                    data=token_data,
                    headers={"Accept": "application/json"},
                )
            except httpx.HTTPError as exc:
                raise UpstreamProviderError(
                    f"Token exchange failed: {sanitize_log_text(exc, limit=_MAX_PROVIDER_ERROR)}",
                    detail=f"endpoint={self._config.token_endpoint}",
                ) from exc

            if token_resp.status_code != 200:
                raise UpstreamProviderError(
                    f"Token exchange failed: {_provider_error_text(token_resp)}",
                    detail=f"status={token_resp.status_code} "
                    f"body={token_resp.text[:_MAX_PROVIDER_BODY_LOG]}",
                )

            try:
                token_payload = token_resp.json()
            except ValueError as exc:
                raise UpstreamProviderError(
                    "Token exchange failed: provider returned non-JSON response"
                ) from exc

            access_token = (
                token_payload.get("access_token") if isinstance(token_payload, dict) else None
            )
            if not access_token:
                raise UpstreamProviderError("Token exchange failed: no access token returned")

            try:
                profile_resp = await client.get(
                    self._config.userinfo_endpoint,
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Accept": "application/json",
                    },
                )
            except httpx.HTTPError as exc:
                raise UpstreamProviderError(
                    f"Profile fetch failed: {sanitize_log_text(exc, limit=_MAX_PROVIDER_ERROR)}",
                    detail=f"endpoint={self._config.userinfo_endpoint}",
                ) from exc

        if profile_resp.status_code != 200:
            raise UpstreamProviderError(
                f"Profile fetch failed: {_provider_error_text(profile_resp)}",
                detail=f"status={profile_resp.status_code} "
                f"body={profile_resp.text[:_MAX_PROVIDER_BODY_LOG]}",
            )

        try:
            profile_payload = profile_resp.json()
        except ValueError as exc:
            raise UpstreamProviderError(
                "Profile fetch failed: provider returned non-JSON response"
            ) from exc
        if not isinstance(profile_payload, dict):
            raise UpstreamProviderError("Profile fetch failed: unexpected profile format")

        profile = IdentityProfile.from_userinfo(profile_payload)
        _logger.debug("Provider exchange succeeded: subject=%s", profile.subject_id)
        return profile


class IdentityClientRegistry:
    """Process-wide map of canonical callback URL -> IdentityClient.

    Entries are created on first use. Least-recently-used entries are
    dropped beyond ``max_entries``; clients hold no per-user state.
    """

    def __init__(self, config: OAuthSettings, max_entries: int | None = None) -> None:
        self._config = config
        self._max_entries = max_entries or config.client_registry_max_entries
        self._clients: OrderedDict[str, IdentityClient] = OrderedDict()
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._clients)

    async def get(self, callback_url: str) -> IdentityClient:
        """Return the client for ``callback_url``, creating it if needed."""
        async with self._lock:
            client = self._clients.get(callback_url)
            if client is not None:
                self._clients.move_to_end(callback_url)
                return client

            client = IdentityClient(self._config, callback_url)
            self._clients[callback_url] = client
            _logger.info("Created OAuth client for callback URL %s", callback_url)
            while len(self._clients) > self._max_entries:
                evicted, _ = self._clients.popitem(last=False)
                _logger.info("Evicted OAuth client for callback URL %s", evicted)
            return client
