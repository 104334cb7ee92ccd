"""
Module: change_control.db.base
Responsibility: Declarative base for every change-control ORM model.  Owns the
    integer identity key convention and the type annotation map that keeps
    column types consistent across PostgreSQL and SQLite.
Architecture position: Kernel > DB.  Lowest-level import target; all model
    files import from here.  MUST NOT import from models/, services/ or domain/.

Invariants enforced:
    - Integer identity keys: BIGINT on PostgreSQL, INTEGER on SQLite so that
      SQLite's rowid autoincrement applies.  BOM numbering (BOM-######) is
      derived from these ids.
    - JSON payloads are JSONB on PostgreSQL.
    - Quantities map to Numeric(18, 3); rates declare Numeric(18, 4) explicitly.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, ClassVar

from sqlalchemy import JSON, BigInteger, Date, DateTime, Integer, Numeric
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

IdentityInteger = BigInteger().with_variant(Integer(), "sqlite")
"""Primary/foreign key integer type."""

JSONDocument = JSON().with_variant(JSONB(), "postgresql")
"""Column type for approval payloads, activity context and snapshots."""


class Base(DeclarativeBase):
    """
    Declarative base for all SQLAlchemy models.

    Guarantees:
        - ``id`` is an autoincrementing integer primary key.
        - ``int`` annotations map to the identity integer type.
        - ``datetime`` maps to DateTime(timezone=True).
        - ``dict``/``list`` annotations map to the JSON document type.
    """

    type_annotation_map: ClassVar[dict] = {
        int: IdentityInteger,
        Decimal: Numeric(18, 3),
        datetime: DateTime(timezone=True),
        date: Date(),
        dict[str, Any]: JSONDocument,
        list[Any]: JSONDocument,
    }

    id: Mapped[int] = mapped_column(IdentityInteger, primary_key=True, autoincrement=True)
