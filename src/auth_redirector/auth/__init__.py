"""Upstream identity provider client and identity policy."""

from auth_redirector.auth.identity_client import (
    IdentityClient,
    IdentityClientRegistry,
    IdentityProfile,
)
from auth_redirector.auth.policy import IdentityPolicy, PolicyDecision, derive_id

__all__ = [
    "IdentityClient",
    "IdentityClientRegistry",
    "IdentityPolicy",
    "IdentityProfile",
    "PolicyDecision",
    "derive_id",
]
