"""
Pytest fixtures for the change-control test suite.

Provides:
- An in-memory SQLite database by default (one engine and schema per run)
- Per-test sessions rolled back at teardown
- Real-commit PostgreSQL sessions for concurrency tests
- A reference-data builder (``seed``) and a ready BOM world (``bom_world``)

Environment Variables:
- DATABASE_URL: database to test against.  Defaults to ``sqlite://``.
  Tests marked ``postgres`` are skipped unless it points at PostgreSQL.
"""

import json
import logging
import os
import threading
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from io import StringIO
from typing import Any, Generator

import pytest
from sqlalchemy import text
from sqlalchemy.orm import Session

from change_config import get_active_config
from change_config.bridges import build_gate_settings, build_permission_resolver
from change_control.db.base import Base
from change_control.db.decision_guard import register_decision_guard, unregister_decision_guard
from change_control.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from change_control.domain.actor import Actor
from change_control.domain.clock import DeterministicClock
from change_control.logging_config import LogContext, StructuredFormatter, configure_logging, reset_logging
from change_control.models.access import (
    Branch,
    PermissionScope,
    RolePermission,
    RoleTemplate,
    User,
    UserBranch,
    UserPermissionOverride,
)
from change_control.models.approval import ApprovalPolicyModel
from change_control.models.master_data import (
    Color,
    Department,
    Item,
    Labour,
    LabourDepartment,
    RmPurchaseRate,
    Size,
    SizeItemType,
    Sku,
    Uom,
    Variant,
)
from change_control.models.period import PeriodControl
from change_control.models.voucher import VoucherHeader
from change_control.services.activity_log_service import ActivityLogService
from change_control.services.approval_decision_service import ApprovalDecisionService
from change_control.services.approval_gate import ApprovalGate
from change_control.services.bom_service import BomService
from change_control.services.event_bus import EventBus
from change_control.services.permission_service import PermissionService

DEFAULT_DATABASE_URL = "sqlite://"

FIXED_NOW = datetime(2026, 3, 10, 9, 30, 0, tzinfo=timezone.utc)


def get_database_url() -> str:
    return os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)


def is_postgres_url(url: str) -> bool:
    return url.startswith("postgresql")


def pytest_configure(config):
    config.addinivalue_line("markers", "postgres: mark test as requiring PostgreSQL")


def pytest_collection_modifyitems(config, items):
    if is_postgres_url(get_database_url()):
        return
    skip = pytest.mark.skip(reason="DATABASE_URL is not PostgreSQL")
    for item in items:
        if "postgres" in item.keywords:
            item.add_marker(skip)


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_context():
    """Clear LogContext and deferred events between tests."""
    LogContext.clear()
    EventBus().discard_pending()
    yield
    LogContext.clear()
    EventBus().discard_pending()


@pytest.fixture
def captured_logs():
    """
    Capture change_control logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, gate):
            gate.gate(...)
            assert any(r["message"] == "approval_request_queued" for r in captured_logs())
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("change_control")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture(scope="session")
def db_engine():
    eng = init_engine_from_url(get_database_url(), echo=False, pool_size=20, max_overflow=10)
    yield eng
    reset_engine()


@pytest.fixture(scope="session")
def db_tables(db_engine):
    drop_tables()
    create_tables()
    register_decision_guard()
    yield
    unregister_decision_guard()
    drop_tables()


def _truncate_all_tables(engine) -> None:
    names = [t.name for t in reversed(Base.metadata.sorted_tables)]
    with engine.connect() as conn:
        if engine.dialect.name == "postgresql":
            conn.execute(text("TRUNCATE " + ", ".join(names) + " RESTART IDENTITY CASCADE"))
        else:
            for name in names:
                conn.execute(text(f"DELETE FROM {name}"))
        conn.commit()


@pytest.fixture
def session(db_tables, db_engine) -> Generator[Session, None, None]:
    """Session joined to an outer transaction that is rolled back at teardown.

    ``session.commit()`` inside a test releases a savepoint only.
    """
    conn = db_engine.connect()
    trans = conn.begin()
    sess = Session(bind=conn, join_transaction_mode="create_savepoint", expire_on_commit=False)
    yield sess
    try:
        sess.close()
    finally:
        try:
            trans.rollback()
        finally:
            conn.close()


@pytest.fixture
def pg_session_factory(db_engine, db_tables):
    """Factory of real-commit sessions for threads; data is truncated afterwards."""
    if db_engine.dialect.name != "postgresql":
        pytest.skip("requires PostgreSQL")
    factory = get_session_factory()
    created: list[Session] = []
    lock = threading.Lock()

    def tracked_factory() -> Session:
        with lock:
            s = factory()
            created.append(s)
            return s

    yield tracked_factory

    for s in created:
        if s.is_active:
            s.rollback()
        s.close()
    _truncate_all_tables(db_engine)


# =============================================================================
# Clock, bus, configuration
# =============================================================================


@pytest.fixture
def deterministic_clock():
    return DeterministicClock(FIXED_NOW)


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture(scope="session")
def active_config():
    return get_active_config()


@pytest.fixture(scope="session")
def resolver(active_config):
    return build_permission_resolver(active_config)


# =============================================================================
# Reference data
# =============================================================================


class Seed:
    """Builds reference rows with sensible defaults; every method flushes."""

    def __init__(self, session: Session):
        self.session = session
        self._n = 0

    def _next(self, prefix: str) -> str:
        self._n += 1
        return f"{prefix}-{self._n}"

    def _add(self, obj):
        self.session.add(obj)
        self.session.flush()
        return obj

    # Access

    def branch(self, name: str | None = None) -> Branch:
        return self._add(Branch(name=name or self._next("Branch"), code=self._next("BR")))

    def role(self, name: str) -> RoleTemplate:
        return self._add(RoleTemplate(name=name))

    def user(
        self,
        role: RoleTemplate | None = None,
        branches: tuple[Branch, ...] = (),
        username: str | None = None,
        email: str | None = None,
        status: str = "active",
    ) -> User:
        user = self._add(User(
            username=username or self._next("user"),
            email=email,
            status=status,
            primary_role_id=role.id if role else None,
        ))
        for branch in branches:
            self._add(UserBranch(user_id=user.id, branch_id=branch.id))
        return user

    def scope(self, scope_key: str, scope_type: str = "SCREEN", module_group: str | None = None) -> PermissionScope:
        return self._add(PermissionScope(
            scope_type=scope_type,
            scope_key=scope_key,
            module_group=module_group or scope_key.split(".", 1)[0],
        ))

    def grant(self, role: RoleTemplate, scope: PermissionScope, **flags: bool) -> RolePermission:
        return self._add(RolePermission(
            role_id=role.id,
            scope_id=scope.id,
            **{f"can_{k}": v for k, v in flags.items()},
        ))

    def override(self, user: User, scope: PermissionScope, **flags: bool | None) -> UserPermissionOverride:
        return self._add(UserPermissionOverride(
            user_id=user.id,
            scope_id=scope.id,
            **{f"can_{k}": v for k, v in flags.items()},
        ))

    def policy(self, entity_type: str, entity_key: str, action: str, requires_approval: bool = True) -> ApprovalPolicyModel:
        return self._add(ApprovalPolicyModel(
            entity_type=entity_type,
            entity_key=entity_key,
            action=action,
            requires_approval=requires_approval,
        ))

    def period(self, branch: Branch, year: int, month: int, status: str) -> PeriodControl:
        return self._add(PeriodControl(branch_id=branch.id, year=year, month=month, status=status))

    def voucher(self, branch: Branch, user: User, code: str = "CASH_VOUCHER", on: date = date(2026, 3, 5)) -> VoucherHeader:
        self._n += 1
        return self._add(VoucherHeader(
            branch_id=branch.id,
            voucher_type_code=code,
            voucher_no=self._n,
            voucher_date=on,
            status="PENDING",
            created_by=user.id,
        ))

    # Master data

    def uom(self, name: str | None = None) -> Uom:
        return self._add(Uom(name=name or self._next("UOM"), code=self._next("U")))

    def size(self, name: str | None = None, item_types: tuple[str, ...] = ()) -> Size:
        size = self._add(Size(name=name or self._next("Size")))
        for item_type in item_types:
            self._add(SizeItemType(size_id=size.id, item_type=item_type))
        return size

    def color(self, name: str | None = None) -> Color:
        return self._add(Color(name=name or self._next("Color")))

    def department(self, name: str | None = None, production: bool = True, active: bool = True) -> Department:
        return self._add(Department(
            name=name or self._next("Dept"),
            is_production=production,
            is_active=active,
        ))

    def item(self, item_type: str, uom: Uom, name: str | None = None, code: str | None = None, **extra: Any) -> Item:
        return self._add(Item(
            code=code or self._next(item_type),
            name=name or self._next(f"{item_type} item"),
            item_type=item_type,
            base_uom_id=uom.id,
            **extra,
        ))

    def rate(self, item: Item, rate: str = "10.00", color: Color | None = None, size: Size | None = None) -> RmPurchaseRate:
        return self._add(RmPurchaseRate(
            rm_item_id=item.id,
            color_id=color.id if color else None,
            size_id=size.id if size else None,
            purchase_rate=Decimal(rate),
            is_active=True,
        ))

    def labour(self, dept: Department | None = None, extra_depts: tuple[Department, ...] = (), name: str | None = None) -> Labour:
        labour = self._add(Labour(name=name or self._next("Labour"), dept_id=dept.id if dept else None))
        for extra in extra_depts:
            self._add(LabourDepartment(labour_id=labour.id, dept_id=extra.id))
        return labour

    def variant(self, item: Item, size: Size | None = None, color: Color | None = None) -> Variant:
        return self._add(Variant(
            item_id=item.id,
            size_id=size.id if size else None,
            color_id=color.id if color else None,
            is_active=True,
        ))

    def sku(self, variant: Variant, code: str | None = None) -> Sku:
        return self._add(Sku(variant_id=variant.id, sku_code=code or self._next("SKU")))


@pytest.fixture
def seed(session):
    return Seed(session)


@dataclass
class Principals:
    branch: Branch
    other_branch: Branch
    admin: User
    admin2: User
    maker: User
    outsider: User
    maker_role: RoleTemplate


@pytest.fixture
def principals(seed) -> Principals:
    """Two branches, two admins, a maker with BOM rights, a user with none."""
    branch = seed.branch("Head Office")
    other = seed.branch("Factory")
    admin_role = seed.role("Admin")
    maker_role = seed.role("Planner")
    bare_role = seed.role("Viewer")
    bom = seed.scope("master_data.bom", module_group="master_data")
    seed.grant(maker_role, bom, view=True, navigate=True, create=True, edit=True)
    return Principals(
        branch=branch,
        other_branch=other,
        admin=seed.user(admin_role, (branch, other), username="admin", email="admin@factory.pk"),
        admin2=seed.user(admin_role, (branch,), username="admin2", email="admin2@factory.pk"),
        maker=seed.user(maker_role, (branch,), username="maker", email="maker@factory.pk"),
        outsider=seed.user(bare_role, (branch,), username="outsider"),
        maker_role=maker_role,
    )


@pytest.fixture
def load_actor(session, deterministic_clock):
    service = PermissionService(session, clock=deterministic_clock)

    def _load(user: User) -> Actor:
        return service.load_actor(user.id)

    return _load


@dataclass
class BomWorld:
    """A minimal but complete set of master data for BOM tests."""

    uom: Uom
    pair: Uom
    fg: Item
    sfg: Item
    rm: Item
    rm_unrated: Item
    dept: Department
    office: Department
    labour: Labour
    size: Size
    color: Color
    sfg_sku: Sku

    def input(self, **header: Any) -> dict[str, Any]:
        """A valid FINISHED-level BOM input for ``fg``."""
        head = {"item_id": self.fg.id, "level": "FINISHED", "output_qty": 12, "output_uom_id": self.pair.id}
        head.update(header)
        return {
            "header": head,
            "rm_lines": [
                {"rm_item_id": self.rm.id, "dept_id": self.dept.id, "qty": "1.5", "normal_loss_pct": 2},
            ],
            "sfg_lines": [],
            "labour_lines": [
                {"dept_id": self.dept.id, "labour_id": self.labour.id, "rate_type": "PER_PAIR", "rate_value": 4},
            ],
            "variant_rules": [],
        }


@pytest.fixture
def bom_world(seed) -> BomWorld:
    uom = seed.uom("KG")
    pair = seed.uom("PAIR")
    dept = seed.department("Stitching")
    office = seed.department("Office", production=False)
    size = seed.size("42", item_types=("FG",))
    color = seed.color("Black")
    fg = seed.item("FG", pair, name="Oxford Shoe", code="FG-OXF")
    sfg = seed.item("SFG", pair, name="Oxford Shoe - UPPER", code="SFG-OXF-UP")
    rm = seed.item("RM", uom, name="Leather", code="RM-LTH")
    rm_unrated = seed.item("RM", uom, name="Glue", code="RM-GLU")
    seed.rate(rm, "850.00")
    labour = seed.labour(dept, name="Stitcher")
    seed.variant(fg, size, color)
    sfg_sku = seed.sku(seed.variant(sfg, size, color), code="SFG-OXF-UP 42 Black")
    return BomWorld(uom, pair, fg, sfg, rm, rm_unrated, dept, office, labour, size, color, sfg_sku)


# =============================================================================
# Services
# =============================================================================


@pytest.fixture
def activity(session, deterministic_clock):
    return ActivityLogService(session, deterministic_clock)


@pytest.fixture
def gate(session, resolver, bus, deterministic_clock, active_config):
    return ApprovalGate(session, resolver, bus, build_gate_settings(active_config), deterministic_clock)


@pytest.fixture
def bom_service(session, deterministic_clock):
    return BomService(session, deterministic_clock)


@pytest.fixture
def decisions(session, bus, deterministic_clock, bom_service):
    return ApprovalDecisionService(session, bus, deterministic_clock, bom_service=bom_service)
