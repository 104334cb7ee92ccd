"""
Change-control configuration schema.

Frozen dataclasses the loader parses YAML into.  Nothing here touches the
kernel's runtime types; ``change_config.bridges`` does that translation.
"""

from __future__ import annotations

from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Navigation catalogue
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NavNodeDef:
    """One catalogue node as authored.  Group nodes have no scope."""

    key: str
    label: str
    scope_type: str | None = None  # MODULE, SCREEN, VOUCHER, REPORT
    scope_key: str | None = None
    route: str | None = None
    children: tuple[NavNodeDef, ...] = ()


# ---------------------------------------------------------------------------
# Behaviour sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GateConfig:
    reroute_on_denied: bool = True


@dataclass(frozen=True)
class EventConfig:
    decision_queue_limit: int = 10
    decision_event_name: str = "approval_decision"
    decision_link_template: str = "/administration/approvals?status={status}&request_id={request_id}"


@dataclass(frozen=True)
class AuditConfig:
    max_depth: int = 4
    max_items: int = 40
    max_string: int = 400
    omit_keys: tuple[str, ...] = ("_csrf", "password", "password_hash", "token", "secret", "secret_enc")


# ---------------------------------------------------------------------------
# Root
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ChangeControlConfig:
    """The whole configuration plus the checksum of its source."""

    config_id: str
    version: int
    admin_role_name: str = "admin"
    navigation: tuple[NavNodeDef, ...] = ()
    legacy_aliases: tuple[tuple[str, str], ...] = ()
    gate: GateConfig = field(default_factory=GateConfig)
    events: EventConfig = field(default_factory=EventConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    checksum: str = ""
