from __future__ import annotations

import hmac
from typing import Mapping

from .enums import Action, Decision
from .ports import Identity, Target

__all__ = ["StaticTokenAuthorizer"]

_READ_ONLY = frozenset({Action.READ, Action.LIST, Action.STREAM})


class StaticTokenAuthorizer:
    """Token table authorizer.

    The operator token maps to an admin identity allowed everything; extra
    tokens may be scoped to a set of applications.  Scoped identities may not
    touch inventory that is not bound to one of their applications, and only
    read multicast-groups of their own service-profiles.
    """

    def __init__(self, operator_token: str | None, scoped: Mapping[str, Identity] | None = None) -> None:
        self._tokens: dict[str, Identity] = dict(scoped or {})
        if operator_token:
            self._tokens[operator_token] = Identity(subject="operator", is_admin=True)

    def identify(self, token: str | None) -> Identity | None:
        if not token:
            return None
        for candidate, identity in self._tokens.items():
            if hmac.compare_digest(candidate.encode(), token.encode()):
                return identity
        return None

    def check(self, identity: Identity, action: Action, target: Target) -> Decision:
        if identity.is_admin:
            return Decision.ALLOW
        if target.kind == "multicast_group":
            # groups carry a shared session of a whole service-profile
            if action in _READ_ONLY and target.service_profile_id in identity.service_profile_ids:
                return Decision.ALLOW
            return Decision.DENY
        if target.application_id is None:
            # network-servers and profiles are shared inventory
            return Decision.ALLOW if action in _READ_ONLY else Decision.DENY
        if target.application_id in identity.application_ids:
            return Decision.ALLOW
        return Decision.DENY
