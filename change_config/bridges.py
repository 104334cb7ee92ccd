"""
Config -> Kernel Bridges.

Functions that turn a ``ChangeControlConfig`` into kernel inputs.  They
live here, with the producer, because the kernel must never import
``change_config``.

Usage:
    from change_config.bridges import build_permission_resolver, build_gate_settings

    config = get_active_config()
    resolver = build_permission_resolver(config)
    gate = ApprovalGate(session, resolver, bus, build_gate_settings(config))
"""

from __future__ import annotations

from change_config.schema import ChangeControlConfig, NavNodeDef
from change_control.domain.actor import ScopeType
from change_control.domain.nav import NavCatalogue, NavNode
from change_control.domain.permissions import PermissionResolver
from change_control.services.approval_decision_service import DecisionSettings
from change_control.services.approval_gate import GateSettings
from change_control.services.event_bus import DecisionHubSettings
from change_control.utils.sanitize import SanitizeLimits


def _to_nav_node(node: NavNodeDef) -> NavNode:
    return NavNode(
        label=node.label,
        scope_type=ScopeType(node.scope_type) if node.scope_type else None,
        scope_key=node.scope_key,
        children=tuple(_to_nav_node(c) for c in node.children),
    )


def build_nav_catalogue(config: ChangeControlConfig) -> NavCatalogue:
    return NavCatalogue([_to_nav_node(n) for n in config.navigation])


def build_permission_resolver(config: ChangeControlConfig) -> PermissionResolver:
    return PermissionResolver(build_nav_catalogue(config), dict(config.legacy_aliases))


def build_gate_settings(config: ChangeControlConfig) -> GateSettings:
    return GateSettings(reroute_on_denied=config.gate.reroute_on_denied)


def build_event_settings(config: ChangeControlConfig) -> tuple[DecisionHubSettings, DecisionSettings]:
    """Settings for the decision hub and for the decision service's event link."""
    hub = DecisionHubSettings(
        queue_limit=config.events.decision_queue_limit,
        event_name=config.events.decision_event_name,
    )
    decision = DecisionSettings(link_template=config.events.decision_link_template)
    return hub, decision


def build_audit_settings(config: ChangeControlConfig) -> SanitizeLimits:
    return SanitizeLimits(
        max_depth=config.audit.max_depth,
        max_items=config.audit.max_items,
        max_string=config.audit.max_string,
        omit_keys=frozenset(config.audit.omit_keys),
    )
