"""
PermissionResolver -- pure allow/deny over an Actor snapshot.

Responsibility:
    Answers ``(actor, scope_type, scope_key, action) -> bool`` using the
    actor's merged permission rows, a static legacy alias table and the nav
    catalogue's scope -> module map.

Architecture position:
    Kernel > Domain.  No I/O.  Built once at startup from configuration and
    shared across requests.

Resolution order (``check``):
    1. Admin actors are always allowed.
    2. Direct row at ``scope_type:scope_key``.
    3. Row at the legacy alias of the key, same scope type.
    4. For non-SCREEN targets, the MODULE row of the effective module
       (registered mapping, else the first path segment).

``screen_allows`` is the variant the approval gate uses for SCREEN writes:
step 4 also applies, but only when the screen is registered in the
catalogue.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

from change_control.domain.actor import Actor, PermissionFlags, ScopeType, normalize_action
from change_control.domain.nav import NavCatalogue, module_of_key


@dataclass(frozen=True)
class PermissionDecision:
    allowed: bool
    matched_via: str | None = None  # admin | direct | legacy | module

    def __bool__(self) -> bool:
        return self.allowed


_DENY = PermissionDecision(False)


def _grants(flags: PermissionFlags | None, action: str) -> bool:
    return flags is not None and flags.grants(action)


class PermissionResolver:
    def __init__(
        self,
        catalogue: NavCatalogue,
        legacy_aliases: Mapping[str, str] | None = None,
    ):
        self._catalogue = catalogue
        self._legacy = dict(legacy_aliases or {})

    @property
    def catalogue(self) -> NavCatalogue:
        return self._catalogue

    def legacy_alias(self, scope_key: str) -> str | None:
        return self._legacy.get(scope_key)

    def resolve(
        self,
        actor: Actor | None,
        scope_type: ScopeType | str,
        scope_key: str,
        action: str,
    ) -> PermissionDecision:
        if actor is None:
            return _DENY
        if actor.is_admin:
            return PermissionDecision(True, "admin")

        scope_type = ScopeType(scope_type)
        action = normalize_action(action)

        if _grants(actor.permission(scope_type, scope_key), action):
            return PermissionDecision(True, "direct")

        legacy = self._legacy.get(scope_key)
        if legacy and _grants(actor.permission(scope_type, legacy), action):
            return PermissionDecision(True, "legacy")

        if scope_type != ScopeType.SCREEN:
            module = self._catalogue.effective_module(scope_type, scope_key)
            if module is None and scope_type == ScopeType.MODULE:
                module = scope_key
            if module and _grants(actor.permission(ScopeType.MODULE, module), action):
                return PermissionDecision(True, "module")

        return _DENY

    def check(
        self,
        actor: Actor | None,
        scope_type: ScopeType | str,
        scope_key: str,
        action: str,
    ) -> bool:
        return self.resolve(actor, scope_type, scope_key, action).allowed

    def resolve_screen(self, actor: Actor | None, scope_key: str, action: str) -> PermissionDecision:
        """SCREEN lookup used by the approval gate (module inheritance included)."""
        decision = self.resolve(actor, ScopeType.SCREEN, scope_key, action)
        if decision.allowed or actor is None:
            return decision
        module = self._catalogue.module_for(ScopeType.SCREEN, scope_key)
        if module and _grants(actor.permission(ScopeType.MODULE, module), normalize_action(action)):
            return PermissionDecision(True, "module")
        return _DENY

    def screen_allows(self, actor: Actor | None, scope_key: str, action: str) -> bool:
        return self.resolve_screen(actor, scope_key, action).allowed

    def can_scope(self, actor: Actor | None, scope_type: str, scope_key: str, action: str) -> bool:
        """Lenient form for view code: unknown actions deny instead of raising."""
        try:
            return self.check(actor, scope_type, scope_key, action)
        except ValueError:
            return False


__all__ = [
    "PermissionDecision",
    "PermissionResolver",
    "module_of_key",
]
