"""Request-to-cookie authentication pipeline.

One ``AuthPipeline.handle`` call runs a login attempt through these stages:

    START -> CANONICALIZED -> AWAITING_CODE                      (login page)
    START -> CANONICALIZED -> EXCHANGING -> POLICY_CHECKED
          -> HANDED_OFF -> ISSUED                                 (cookie + redirect)

Any stage may exit to FAILED, which produces exactly one error response
and one log line.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from starlette.datastructures import QueryParams
from starlette.requests import Request
from starlette.responses import HTMLResponse, PlainTextResponse, RedirectResponse, Response

from auth_redirector.auth.identity_client import (
    IdentityClient,
    IdentityClientRegistry,
    IdentityProfile,
)
from auth_redirector.auth.policy import IdentityPolicy, PolicyDecision
from auth_redirector.backend.handoff import BackendHandoff, build_backend_record
from auth_redirector.config import CookieSettings, Settings
from auth_redirector.errors import (
    ClientInputError,
    ConfigurationFault,
    PolicyDeniedError,
    RedirectorError,
    UpstreamProviderError,
)
from auth_redirector.login_page import LoginPage
from auth_redirector.utils.http import (
    canonicalize_request,
    format_set_cookie,
    is_cookie_value,
    is_safe_redirect_target,
    sanitize_log_text,
)

logger = logging.getLogger(__name__)

LOGIN_THEN_CLOSE_PAGE = "close.html"
_FALSE_FLAG_VALUES = frozenset({"0", "false", "no", "off"})
_NO_STORE = {"Cache-Control": "no-store"}


class Stage(str, enum.Enum):
    START = "START"
    CANONICALIZED = "CANONICALIZED"
    AWAITING_CODE = "AWAITING_CODE"
    EXCHANGING = "EXCHANGING"
    POLICY_CHECKED = "POLICY_CHECKED"
    HANDED_OFF = "HANDED_OFF"
    ISSUED = "ISSUED"
    FAILED = "FAILED"


@dataclass
class _Attempt:
    stage: Stage = Stage.START


def _flag_enabled(value: str | None) -> bool:
    """A present flag is on unless its value is explicitly false."""
    if value is None:
        return False
    return value.strip().lower() not in _FALSE_FLAG_VALUES


class AuthPipeline:
    """Turns one inbound request into a login page, a cookie redirect, or an error."""

    def __init__(
        self,
        *,
        registry: IdentityClientRegistry,
        policy: IdentityPolicy,
        login_page: LoginPage,
        cookie: CookieSettings,
        default_after: str,
        static_url: str,
        handoff: BackendHandoff | None = None,
        backend_fields: tuple[str, ...] = ("id",),
    ) -> None:
        self._registry = registry
        self._policy = policy
        self._login_page = login_page
        self._cookie = cookie
        self._default_after = default_after
        self._static_url = static_url
        self._handoff = handoff
        self._backend_fields = backend_fields

    @classmethod
    def from_settings(cls, settings: Settings) -> "AuthPipeline":
        handoff = None
        if settings.backend.enabled:
            handoff = BackendHandoff(settings.backend.host, settings.backend.port)
        return cls(
            registry=IdentityClientRegistry(settings.oauth),
            policy=IdentityPolicy.from_settings(settings.policy),
            login_page=LoginPage.from_settings(settings),
            cookie=settings.cookie,
            default_after=settings.urls.default_after or settings.urls.connect_url,
            static_url=settings.urls.static_url or settings.urls.connect_url,
            handoff=handoff,
            backend_fields=settings.backend.fields,
        )

    @property
    def registry(self) -> IdentityClientRegistry:
        return self._registry

    async def handle(self, request: Request) -> Response:
        attempt = _Attempt()
        try:
            return await self._run(request, attempt)
        except RedirectorError as exc:
            return self._failure_response(exc, attempt)

    async def _run(self, request: Request, attempt: _Attempt) -> Response:
        canonical = canonicalize_request(request)
        attempt.stage = Stage.CANONICALIZED

        params = request.query_params
        client = await self._registry.get(canonical.callback_url)

        code = params.get("code")
        if not code:
            provider_error = params.get("error")
            if provider_error:
                description = params.get("error_description", "")
                raise UpstreamProviderError(
                    "Identity provider returned an error: "
                    f"{sanitize_log_text(provider_error, limit=64)}",
                    detail=f"description={sanitize_log_text(description, limit=256)}",
                )
            attempt.stage = Stage.AWAITING_CODE
            return self._login_page_response(client, params)

        # Reject a bad destination before the code is spent.
        self._check_state_target(params)

        attempt.stage = Stage.EXCHANGING
        profile = await client.exchange(code)

        decision = self._policy.decide(profile)
        attempt.stage = Stage.POLICY_CHECKED
        if not decision.allowed:
            raise PolicyDeniedError(
                f"Email address not permitted: {profile.email}",
                detail=f"email={profile.email!r} pattern={self._policy.pattern!r}",
            )

        cookie_value = await self._hand_off(profile, decision)
        attempt.stage = Stage.HANDED_OFF

        destination = self._require_state(params)
        response = self._cookie_response(cookie_value, destination)
        attempt.stage = Stage.ISSUED
        logger.info(
            "login succeeded: email=%s backend=%s destination=%s",
            profile.email,
            "yes" if self._handoff else "no",
            destination,
        )
        return response

    def _post_login_destination(self, params: QueryParams) -> str:
        after = params.get("after")
        if after:
            if not is_safe_redirect_target(after):
                raise ClientInputError(
                    "Invalid 'after' destination",
                    detail=f"after={sanitize_log_text(after)!r}",
                )
            return after
        if _flag_enabled(params.get("loginThenClose")):
            return f"{self._static_url}/{LOGIN_THEN_CLOSE_PAGE}"
        return self._default_after

    def _login_page_response(self, client: IdentityClient, params: QueryParams) -> Response:
        destination = self._post_login_destination(params)
        authorize_url = client.authorize_url(state=destination)
        return HTMLResponse(self._login_page.render(authorize_url), headers=_NO_STORE)

    async def _hand_off(self, profile: IdentityProfile, decision: PolicyDecision) -> str:
        if self._handoff is None:
            if not is_cookie_value(decision.derived_id):
                raise UpstreamProviderError(
                    "Identity provider returned an id that cannot be used as a cookie",
                    detail=f"subject={sanitize_log_text(profile.subject_id, limit=64)!r}",
                )
            return decision.derived_id
        record = build_backend_record(profile, decision.derived_id, self._backend_fields)
        return await self._handoff.send(record)

    def _check_state_target(self, params: QueryParams) -> None:
        state = params.get("state")
        if state and not is_safe_redirect_target(state):
            raise ClientInputError(
                "Invalid login state",
                detail=f"state={sanitize_log_text(state)!r}",
            )

    def _require_state(self, params: QueryParams) -> str:
        state = params.get("state")
        if not state:
            raise ConfigurationFault(
                "Identity provider did not return the login state",
                detail="callback carried a code but no state parameter",
            )
        return state

    def _cookie_response(self, value: str, destination: str) -> Response:
        # Values are cookie-octets already; SimpleCookie quoting would alter them.
        response = RedirectResponse(url=destination, status_code=302)
        response.headers.append(
            "set-cookie",
            format_set_cookie(self._cookie.name, value, domain=self._cookie.domain),
        )
        return response

    def _failure_response(self, exc: RedirectorError, attempt: _Attempt) -> Response:
        failed_at = attempt.stage
        attempt.stage = Stage.FAILED
        log = logger.warning if exc.status_code < 500 else logger.error
        log(
            "login failed: kind=%s status=%d stage=%s message=%s detail=%s",
            type(exc).__name__,
            exc.status_code,
            failed_at.value,
            exc.public_message,
            exc.detail,
        )
        return PlainTextResponse(
            exc.public_message,
            status_code=exc.status_code,
            headers=_NO_STORE,
        )
