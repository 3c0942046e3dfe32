"""Email allow-list policy and pseudonymous id derivation."""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass

from auth_redirector.auth.identity_client import IdentityProfile
from auth_redirector.config import PolicySettings


@dataclass(frozen=True)
class PolicyDecision:
    allowed: bool
    derived_id: str


def derive_id(subject_id: str, salt: str | None) -> str:
    """Derive the identifier forwarded to the backend.

    ``salt=None`` disables hashing and returns ``subject_id`` unchanged.
    Otherwise the result is ``hex(sha512(salt + subject_id))``; an empty
    salt therefore hashes the bare id.
    """
    if not subject_id or salt is None:
        return subject_id
    return hashlib.sha512((salt + subject_id).encode("utf-8")).hexdigest()


class IdentityPolicy:
    """Allow/deny by full-match email pattern, then derive the user id."""

    def __init__(self, email_pattern: str = ".*", salt: str | None = None) -> None:
        self._pattern = re.compile(email_pattern)
        self._salt = salt

    @classmethod
    def from_settings(cls, settings: PolicySettings) -> "IdentityPolicy":
        return cls(email_pattern=settings.email_pattern, salt=settings.salt)

    @property
    def pattern(self) -> str:
        return self._pattern.pattern

    def is_allowed(self, email: str) -> bool:
        return self._pattern.fullmatch(email) is not None

    def decide(self, profile: IdentityProfile) -> PolicyDecision:
        return PolicyDecision(
            allowed=self.is_allowed(profile.email),
            derived_id=derive_id(profile.subject_id, self._salt),
        )
