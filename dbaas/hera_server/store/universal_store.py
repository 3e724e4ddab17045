"""
Universal SQLite store for HERA.

This module manages the single relational database holding the six
universal tables:
- core_organizations: tenant registry (platform organization seeded)
- core_entities: every business object
- core_dynamic_data: typed fields attached to one entity
- core_relationships: typed, directed edges between entities
- universal_transactions: transaction headers
- universal_transaction_lines: ordered lines of a transaction

Invariants:
    - Every statement filters on organization_id
    - Every write method is one unit of work (BEGIN IMMEDIATE ... COMMIT)
    - Dynamic data is unique per (organization_id, entity_id, field_name)
    - Edges are unique per (organization_id, from, to, relationship_type)
    - entity_code is unique per (organization_id, entity_type) when present
    - external_reference is unique per organization when present

How to change safely:
    - Never add per-domain tables; extend metadata or dynamic data instead
    - Schema migrations must be backward compatible (bump SCHEMA_VERSION)
    - Route transaction reads through store/visibility.py

Table schema:
    core_entities:
        - id TEXT (UUID) PRIMARY KEY
        - organization_id TEXT
        - entity_type, entity_name, entity_code, smart_code, status TEXT
        - metadata TEXT (JSON)
        - created_by, updated_by TEXT (actor stamps)
        - created_at, updated_at TEXT (ISO-8601 UTC)

    core_dynamic_data:
        - entity_id TEXT -> core_entities.id
        - field_name, field_type TEXT
        - field_value_text TEXT / field_value_number REAL /
          field_value_boolean INTEGER / field_value_date TEXT /
          field_value_json TEXT (exactly one populated)

    universal_transaction_lines:
        - transaction_id TEXT -> universal_transactions.id
        - line_number INTEGER, UNIQUE (transaction_id, line_number)
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import uuid
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..schema.types import (
    PLATFORM_ORGANIZATION_ID,
    FieldType,
    FieldValue,
    TransactionStatus,
    field_value_from_columns,
    field_value_to_columns,
)
from .visibility import DEFAULT_INCLUDE_DELETED, transaction_visibility

logger = logging.getLogger(__name__)


class StoreError(Exception):
    """Base class for store-level failures."""

    pass


class DuplicateKeyError(StoreError):
    """A uniqueness constraint rejected the write.

    Attributes:
        constraint: Logical name of the violated key
    """

    def __init__(self, constraint: str, message: str | None = None) -> None:
        self.constraint = constraint
        super().__init__(message or f"Duplicate key for {constraint}")


class StatusChangedError(StoreError):
    """A conditional write found the row in a different status than expected.

    Attributes:
        expected: Status the caller validated against
        actual: Status found inside the unit of work
    """

    def __init__(self, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"Status changed from {expected} to {actual}")


def utc_now() -> str:
    """Current UTC time as a sortable ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds")


@dataclass
class Organization:
    """A tenant."""

    id: str
    organization_name: str
    organization_code: str | None
    status: str
    metadata: dict[str, Any]
    created_at: str
    updated_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "organization_name": self.organization_name,
            "organization_code": self.organization_code,
            "status": self.status,
            "metadata": self.metadata,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class Entity:
    """Any addressable business object.

    Attributes:
        id: Entity UUID
        organization_id: Owning tenant
        entity_type: Free-text classification (CUSTOMER, PRODUCT, GL_ACCOUNT...)
        entity_name: Display name
        entity_code: Business key, unique within (organization, entity_type)
        smart_code: Semantic tag
        status: Lifecycle status
        metadata: Unstructured JSON
        created_by: Actor who created the entity
        updated_by: Actor who last changed the entity
    """

    id: str
    organization_id: str
    entity_type: str
    entity_name: str
    entity_code: str | None
    smart_code: str
    status: str
    metadata: dict[str, Any]
    created_by: str | None
    updated_by: str | None
    created_at: str
    updated_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "entity_type": self.entity_type,
            "entity_name": self.entity_name,
            "entity_code": self.entity_code,
            "smart_code": self.smart_code,
            "status": self.status,
            "metadata": self.metadata,
            "created_by": self.created_by,
            "updated_by": self.updated_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class DynamicFieldInput:
    """One field to upsert on an entity."""

    field_name: str
    value: FieldValue
    smart_code: str


@dataclass
class DynamicField:
    """A typed attribute attached to one entity."""

    id: str
    organization_id: str
    entity_id: str
    field_name: str
    value: FieldValue
    smart_code: str
    created_by: str | None
    updated_by: str | None
    created_at: str
    updated_at: str

    @property
    def field_type(self) -> FieldType:
        return self.value.field_type

    def to_dict(self) -> dict[str, Any]:
        data = {
            "id": self.id,
            "organization_id": self.organization_id,
            "entity_id": self.entity_id,
            "field_name": self.field_name,
            "field_type": self.field_type.value,
            "smart_code": self.smart_code,
            "created_by": self.created_by,
            "updated_by": self.updated_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }
        data.update(dict.fromkeys(kind.column for kind in FieldType))
        data[self.field_type.column] = self.value.value
        return data


@dataclass
class Relationship:
    """A typed, directed edge between two entities."""

    id: str
    organization_id: str
    from_entity_id: str
    to_entity_id: str
    relationship_type: str
    relationship_direction: str
    relationship_strength: float
    relationship_data: dict[str, Any]
    smart_code: str
    is_active: bool
    effective_date: str | None
    created_by: str | None
    updated_by: str | None
    created_at: str
    updated_at: str
    from_entity_name: str | None = None
    to_entity_name: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "from_entity_id": self.from_entity_id,
            "to_entity_id": self.to_entity_id,
            "relationship_type": self.relationship_type,
            "relationship_direction": self.relationship_direction,
            "relationship_strength": self.relationship_strength,
            "relationship_data": self.relationship_data,
            "smart_code": self.smart_code,
            "is_active": self.is_active,
            "effective_date": self.effective_date,
            "created_by": self.created_by,
            "updated_by": self.updated_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "from_entity_name": self.from_entity_name,
            "to_entity_name": self.to_entity_name,
        }


@dataclass
class TransactionLine:
    """One ordered item within a transaction."""

    id: str
    organization_id: str
    transaction_id: str
    line_number: int
    line_type: str
    line_amount: float
    smart_code: str
    description: str | None = None
    line_entity_id: str | None = None
    quantity: float | None = None
    unit_amount: float | None = None
    line_data: dict[str, Any] = field(default_factory=dict)
    created_at: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "transaction_id": self.transaction_id,
            "line_number": self.line_number,
            "line_type": self.line_type,
            "description": self.description,
            "line_entity_id": self.line_entity_id,
            "quantity": self.quantity,
            "unit_amount": self.unit_amount,
            "line_amount": self.line_amount,
            "smart_code": self.smart_code,
            "line_data": self.line_data,
            "created_at": self.created_at,
        }


@dataclass
class Transaction:
    """A transaction header."""

    id: str
    organization_id: str
    transaction_type: str
    smart_code: str
    transaction_status: str
    total_amount: float
    transaction_date: str
    transaction_code: str | None = None
    source_entity_id: str | None = None
    target_entity_id: str | None = None
    external_reference: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_by: str | None = None
    updated_by: str | None = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def status(self) -> TransactionStatus:
        return TransactionStatus(self.transaction_status)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "organization_id": self.organization_id,
            "transaction_type": self.transaction_type,
            "transaction_code": self.transaction_code,
            "smart_code": self.smart_code,
            "transaction_status": self.transaction_status,
            "total_amount": self.total_amount,
            "transaction_date": self.transaction_date,
            "source_entity_id": self.source_entity_id,
            "target_entity_id": self.target_entity_id,
            "external_reference": self.external_reference,
            "metadata": self.metadata,
            "created_by": self.created_by,
            "updated_by": self.updated_by,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass
class EntityDependencies:
    """Counts of rows referencing an entity."""

    dynamic_fields: int = 0
    relationships: int = 0
    transactions: int = 0
    transaction_lines: int = 0

    @property
    def total(self) -> int:
        return self.dynamic_fields + self.relationships + self.transactions + self.transaction_lines

    def to_dict(self) -> dict[str, int]:
        return {
            "dynamic_fields": self.dynamic_fields,
            "relationships": self.relationships,
            "transactions": self.transactions,
            "transaction_lines": self.transaction_lines,
        }


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join("?" for _ in values)


def _prefix_clause(column: str, prefix: str) -> tuple[str, list[Any]]:
    """Segment-aware smart code prefix match: HERA.SALON matches HERA.SALON.X.v1 only."""
    prefix = prefix.rstrip(".")
    return f"({column} = ? OR substr({column}, 1, ?) = ?)", [prefix, len(prefix) + 1, prefix + "."]


def _row_to_entity(row: sqlite3.Row) -> Entity:
    return Entity(
        id=row["id"],
        organization_id=row["organization_id"],
        entity_type=row["entity_type"],
        entity_name=row["entity_name"],
        entity_code=row["entity_code"],
        smart_code=row["smart_code"],
        status=row["status"],
        metadata=json.loads(row["metadata"]),
        created_by=row["created_by"],
        updated_by=row["updated_by"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_field(row: sqlite3.Row) -> DynamicField:
    return DynamicField(
        id=row["id"],
        organization_id=row["organization_id"],
        entity_id=row["entity_id"],
        field_name=row["field_name"],
        value=field_value_from_columns(FieldType(row["field_type"]), row),
        smart_code=row["smart_code"],
        created_by=row["created_by"],
        updated_by=row["updated_by"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_relationship(row: sqlite3.Row) -> Relationship:
    keys = row.keys()
    return Relationship(
        id=row["id"],
        organization_id=row["organization_id"],
        from_entity_id=row["from_entity_id"],
        to_entity_id=row["to_entity_id"],
        relationship_type=row["relationship_type"],
        relationship_direction=row["relationship_direction"],
        relationship_strength=row["relationship_strength"],
        relationship_data=json.loads(row["relationship_data"]),
        smart_code=row["smart_code"],
        is_active=bool(row["is_active"]),
        effective_date=row["effective_date"],
        created_by=row["created_by"],
        updated_by=row["updated_by"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        from_entity_name=row["from_entity_name"] if "from_entity_name" in keys else None,
        to_entity_name=row["to_entity_name"] if "to_entity_name" in keys else None,
    )


def _row_to_transaction(row: sqlite3.Row) -> Transaction:
    return Transaction(
        id=row["id"],
        organization_id=row["organization_id"],
        transaction_type=row["transaction_type"],
        transaction_code=row["transaction_code"],
        smart_code=row["smart_code"],
        transaction_status=row["transaction_status"],
        total_amount=row["total_amount"],
        transaction_date=row["transaction_date"],
        source_entity_id=row["source_entity_id"],
        target_entity_id=row["target_entity_id"],
        external_reference=row["external_reference"],
        metadata=json.loads(row["metadata"]),
        created_by=row["created_by"],
        updated_by=row["updated_by"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _row_to_line(row: sqlite3.Row) -> TransactionLine:
    return TransactionLine(
        id=row["id"],
        organization_id=row["organization_id"],
        transaction_id=row["transaction_id"],
        line_number=row["line_number"],
        line_type=row["line_type"],
        description=row["description"],
        line_entity_id=row["line_entity_id"],
        quantity=row["quantity"],
        unit_amount=row["unit_amount"],
        line_amount=row["line_amount"],
        smart_code=row["smart_code"],
        line_data=json.loads(row["line_data"]),
        created_at=row["created_at"],
    )


_RELATIONSHIP_SELECT = """
    SELECT r.*, fe.entity_name AS from_entity_name, te.entity_name AS to_entity_name
    FROM core_relationships r
    LEFT JOIN core_entities fe
        ON fe.id = r.from_entity_id AND fe.organization_id = r.organization_id
    LEFT JOIN core_entities te
        ON te.id = r.to_entity_id AND te.organization_id = r.organization_id
"""


class UniversalStore:
    """SQLite store for the six universal tables.

    Thread safety:
        Each operation opens its own connection.
        SQLite handles concurrent access via WAL mode.

    Example:
        >>> store = UniversalStore("/var/lib/hera")
        >>> await store.initialize()
        >>> entity = await store.create_entity(
        ...     organization_id="org_1",
        ...     entity_type="CUSTOMER",
        ...     entity_name="Jane Doe",
        ...     smart_code="HERA.SALON.CUSTOMER.ENTITY.INDIVIDUAL.v1",
        ...     actor="user_1",
        ... )
    """

    SCHEMA_VERSION = 1

    def __init__(
        self,
        data_dir: str,
        database_name: str = "hera.db",
        wal_mode: bool = True,
        busy_timeout_ms: int = 5000,
        cache_size_pages: int = -64000,
    ) -> None:
        """Initialize the store.

        Args:
            data_dir: Directory for the SQLite database file
            database_name: Database file name inside data_dir
            wal_mode: Enable SQLite WAL mode
            busy_timeout_ms: SQLite busy timeout
            cache_size_pages: SQLite cache size (negative = KB)
        """
        self.data_dir = Path(data_dir)
        self.database_name = database_name
        self.wal_mode = wal_mode
        self.busy_timeout_ms = busy_timeout_ms
        self.cache_size_pages = cache_size_pages
        self._schema_ready = False
        self._lock = asyncio.Lock()

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.database_name

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a configured connection, creating the schema on first use."""
        self.data_dir.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,  # Autocommit by default, explicit transactions
        )
        conn.row_factory = sqlite3.Row

        try:
            conn.execute(f"PRAGMA busy_timeout = {self.busy_timeout_ms}")
            conn.execute(f"PRAGMA cache_size = {self.cache_size_pages}")
            if self.wal_mode:
                conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            conn.execute("PRAGMA foreign_keys = ON")

            if not self._schema_ready:
                self._create_schema(conn)
                self._schema_ready = True

            yield conn
        finally:
            conn.close()

    @contextmanager
    def _unit_of_work(self) -> Iterator[sqlite3.Connection]:
        """Connection wrapped in BEGIN IMMEDIATE / COMMIT, rolled back on error."""
        with self._get_connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
                conn.execute("COMMIT")
            except Exception:
                conn.execute("ROLLBACK")
                raise

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        """Create database schema and seed the platform organization."""
        now = utc_now()
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS schema_version (
                version INTEGER PRIMARY KEY,
                applied_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS core_organizations (
                id TEXT PRIMARY KEY,
                organization_name TEXT NOT NULL,
                organization_code TEXT,
                status TEXT NOT NULL DEFAULT 'active',
                metadata TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE UNIQUE INDEX IF NOT EXISTS uq_organizations_code
                ON core_organizations(organization_code)
                WHERE organization_code IS NOT NULL;

            CREATE TABLE IF NOT EXISTS core_entities (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_name TEXT NOT NULL,
                entity_code TEXT,
                smart_code TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'active',
                metadata TEXT NOT NULL DEFAULT '{}',
                created_by TEXT,
                updated_by TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_entities_type
                ON core_entities(organization_id, entity_type);
            CREATE INDEX IF NOT EXISTS idx_entities_created
                ON core_entities(organization_id, created_at);
            CREATE UNIQUE INDEX IF NOT EXISTS uq_entities_code
                ON core_entities(organization_id, entity_type, entity_code)
                WHERE entity_code IS NOT NULL;

            CREATE TABLE IF NOT EXISTS core_dynamic_data (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL,
                entity_id TEXT NOT NULL REFERENCES core_entities(id),
                field_name TEXT NOT NULL,
                field_type TEXT NOT NULL,
                field_value_text TEXT,
                field_value_number REAL,
                field_value_boolean INTEGER,
                field_value_date TEXT,
                field_value_json TEXT,
                smart_code TEXT NOT NULL,
                created_by TEXT,
                updated_by TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (organization_id, entity_id, field_name)
            );

            CREATE TABLE IF NOT EXISTS core_relationships (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL,
                from_entity_id TEXT NOT NULL REFERENCES core_entities(id),
                to_entity_id TEXT NOT NULL REFERENCES core_entities(id),
                relationship_type TEXT NOT NULL,
                relationship_direction TEXT NOT NULL DEFAULT 'forward',
                relationship_strength REAL NOT NULL DEFAULT 1.0,
                relationship_data TEXT NOT NULL DEFAULT '{}',
                smart_code TEXT NOT NULL,
                is_active INTEGER NOT NULL DEFAULT 1,
                effective_date TEXT,
                created_by TEXT,
                updated_by TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (organization_id, from_entity_id, to_entity_id, relationship_type)
            );

            CREATE INDEX IF NOT EXISTS idx_relationships_from
                ON core_relationships(organization_id, from_entity_id, relationship_type);
            CREATE INDEX IF NOT EXISTS idx_relationships_to
                ON core_relationships(organization_id, to_entity_id, relationship_type);

            CREATE TABLE IF NOT EXISTS universal_transactions (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL,
                transaction_type TEXT NOT NULL,
                transaction_code TEXT,
                smart_code TEXT NOT NULL,
                transaction_status TEXT NOT NULL,
                total_amount REAL NOT NULL DEFAULT 0,
                transaction_date TEXT NOT NULL,
                source_entity_id TEXT REFERENCES core_entities(id),
                target_entity_id TEXT REFERENCES core_entities(id),
                external_reference TEXT,
                metadata TEXT NOT NULL DEFAULT '{}',
                created_by TEXT,
                updated_by TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_transactions_type
                ON universal_transactions(organization_id, transaction_type);
            CREATE INDEX IF NOT EXISTS idx_transactions_date
                ON universal_transactions(organization_id, transaction_date);
            CREATE INDEX IF NOT EXISTS idx_transactions_source
                ON universal_transactions(organization_id, source_entity_id);
            CREATE INDEX IF NOT EXISTS idx_transactions_target
                ON universal_transactions(organization_id, target_entity_id);
            CREATE UNIQUE INDEX IF NOT EXISTS uq_transactions_external_reference
                ON universal_transactions(organization_id, external_reference)
                WHERE external_reference IS NOT NULL;

            CREATE TABLE IF NOT EXISTS universal_transaction_lines (
                id TEXT PRIMARY KEY,
                organization_id TEXT NOT NULL,
                transaction_id TEXT NOT NULL REFERENCES universal_transactions(id),
                line_number INTEGER NOT NULL,
                line_type TEXT NOT NULL,
                description TEXT,
                line_entity_id TEXT REFERENCES core_entities(id),
                quantity REAL,
                unit_amount REAL,
                line_amount REAL NOT NULL,
                smart_code TEXT NOT NULL,
                line_data TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                UNIQUE (transaction_id, line_number)
            );

            CREATE INDEX IF NOT EXISTS idx_lines_transaction
                ON universal_transaction_lines(organization_id, transaction_id);
            CREATE INDEX IF NOT EXISTS idx_lines_entity
                ON universal_transaction_lines(organization_id, line_entity_id);
        """)
        conn.execute(
            "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
            (self.SCHEMA_VERSION, now),
        )
        conn.execute(
            """
            INSERT OR IGNORE INTO core_organizations
                (id, organization_name, organization_code, status, metadata, created_at, updated_at)
            VALUES (?, 'HERA Platform', 'PLATFORM', 'active', '{}', ?, ?)
            """,
            (PLATFORM_ORGANIZATION_ID, now, now),
        )

    async def initialize(self) -> None:
        """Create the database file and schema if they don't exist."""
        async with self._lock:
            with self._get_connection():
                logger.info("Initialized universal store", extra={"path": str(self.db_path)})

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------

    async def create_organization(
        self,
        organization_id: str,
        organization_name: str,
        organization_code: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Organization:
        """Register a tenant.

        Raises:
            DuplicateKeyError: If the id or organization_code is taken
        """
        now = utc_now()
        metadata = metadata or {}
        try:
            with self._unit_of_work() as conn:
                conn.execute(
                    """
                    INSERT INTO core_organizations
                        (id, organization_name, organization_code, status, metadata,
                         created_at, updated_at)
                    VALUES (?, ?, ?, 'active', ?, ?, ?)
                    """,
                    (organization_id, organization_name, organization_code,
                     json.dumps(metadata), now, now),
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateKeyError("organization", str(e)) from e

        logger.info("Created organization", extra={"organization_id": organization_id})
        return Organization(
            id=organization_id,
            organization_name=organization_name,
            organization_code=organization_code,
            status="active",
            metadata=metadata,
            created_at=now,
            updated_at=now,
        )

    async def get_organization(self, organization_id: str) -> Organization | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM core_organizations WHERE id = ?",
                (organization_id,),
            ).fetchone()
            if not row:
                return None
            return Organization(
                id=row["id"],
                organization_name=row["organization_name"],
                organization_code=row["organization_code"],
                status=row["status"],
                metadata=json.loads(row["metadata"]),
                created_at=row["created_at"],
                updated_at=row["updated_at"],
            )

    # ------------------------------------------------------------------
    # Entities
    # ------------------------------------------------------------------

    async def create_entity(
        self,
        organization_id: str,
        entity_type: str,
        entity_name: str,
        smart_code: str,
        actor: str | None,
        entity_id: str,
        entity_code: str | None = None,
        status: str = "active",
        metadata: dict[str, Any] | None = None,
        fields: Sequence[DynamicFieldInput] = (),
    ) -> tuple[Entity, list[DynamicField]]:
        """Create an entity and its initial dynamic fields atomically.

        Args:
            organization_id: Owning tenant
            entity_type: Classification
            entity_name: Display name
            smart_code: Validated smart code
            actor: Actor stamp
            entity_id: New entity UUID
            entity_code: Optional business key
            status: Initial status
            metadata: Unstructured JSON
            fields: Dynamic fields written in the same unit of work

        Returns:
            Tuple of (entity, written fields)

        Raises:
            DuplicateKeyError: If entity_code is already used for this type
        """
        now = utc_now()
        metadata = metadata or {}

        try:
            with self._unit_of_work() as conn:
                conn.execute(
                    """
                    INSERT INTO core_entities
                        (id, organization_id, entity_type, entity_name, entity_code, smart_code,
                         status, metadata, created_by, updated_by, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (entity_id, organization_id, entity_type, entity_name, entity_code,
                     smart_code, status, json.dumps(metadata), actor, actor, now, now),
                )
                written = self._upsert_fields(conn, organization_id, entity_id, fields, actor, now)
        except sqlite3.IntegrityError as e:
            raise DuplicateKeyError("entity_code", str(e)) from e

        logger.debug(
            "Created entity",
            extra={
                "organization_id": organization_id,
                "entity_id": entity_id,
                "entity_type": entity_type,
            },
        )

        entity = Entity(
            id=entity_id,
            organization_id=organization_id,
            entity_type=entity_type,
            entity_name=entity_name,
            entity_code=entity_code,
            smart_code=smart_code,
            status=status,
            metadata=metadata,
            created_by=actor,
            updated_by=actor,
            created_at=now,
            updated_at=now,
        )
        return entity, written

    async def get_entity(self, organization_id: str, entity_id: str) -> Entity | None:
        """Get an entity by ID within one organization."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM core_entities WHERE organization_id = ? AND id = ?",
                (organization_id, entity_id),
            ).fetchone()
            return _row_to_entity(row) if row else None

    async def existing_entity_ids(
        self, organization_id: str, entity_ids: Sequence[str]
    ) -> set[str]:
        """Return the subset of entity_ids that exist in the organization."""
        ids = list(dict.fromkeys(entity_ids))
        if not ids:
            return set()
        with self._get_connection() as conn:
            rows = conn.execute(
                f"""
                SELECT id FROM core_entities
                WHERE organization_id = ? AND id IN ({_placeholders(ids)})
                """,
                (organization_id, *ids),
            ).fetchall()
            return {row["id"] for row in rows}

    async def update_entity(
        self,
        organization_id: str,
        entity_id: str,
        changes: dict[str, Any],
        actor: str | None,
        metadata_patch: dict[str, Any] | None = None,
        fields: Sequence[DynamicFieldInput] = (),
    ) -> Entity | None:
        """Update entity columns.

        Uses PATCH semantics: metadata_patch merges into existing metadata.

        Args:
            organization_id: Owning tenant
            entity_id: Entity identifier
            changes: Column values to overwrite (already validated)
            actor: Actor stamp
            metadata_patch: Keys merged into metadata
            fields: Dynamic fields upserted in the same unit of work

        Returns:
            Updated Entity or None if not found

        Raises:
            DuplicateKeyError: If the new entity_code collides
        """
        now = utc_now()
        try:
            with self._unit_of_work() as conn:
                row = conn.execute(
                    "SELECT * FROM core_entities WHERE organization_id = ? AND id = ?",
                    (organization_id, entity_id),
                ).fetchone()
                if not row:
                    return None

                entity = _row_to_entity(row)
                for column, value in changes.items():
                    setattr(entity, column, value)
                if metadata_patch:
                    entity.metadata.update(metadata_patch)
                entity.updated_by = actor
                entity.updated_at = now

                conn.execute(
                    """
                    UPDATE core_entities
                    SET entity_type = ?, entity_name = ?, entity_code = ?, smart_code = ?,
                        status = ?, metadata = ?, updated_by = ?, updated_at = ?
                    WHERE organization_id = ? AND id = ?
                    """,
                    (entity.entity_type, entity.entity_name, entity.entity_code,
                     entity.smart_code, entity.status, json.dumps(entity.metadata),
                     actor, now, organization_id, entity_id),
                )
                if fields:
                    self._upsert_fields(conn, organization_id, entity_id, fields, actor, now)
        except sqlite3.IntegrityError as e:
            raise DuplicateKeyError("entity_code", str(e)) from e

        return entity

    async def query_entities(
        self,
        organization_id: str,
        entity_type: str | None = None,
        status: str | None = None,
        search: str | None = None,
        smart_code_prefix: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[Entity], int]:
        """Query entities.

        Ordered by (created_at, rowid) so pages are stable.

        Returns:
            Tuple of (page, total matching rows)
        """
        where = ["organization_id = ?"]
        params: list[Any] = [organization_id]

        if entity_type is not None:
            where.append("entity_type = ?")
            params.append(entity_type)
        if status is not None:
            where.append("status = ?")
            params.append(status)
        if search:
            where.append("(entity_name LIKE ? ESCAPE '\\' OR entity_code LIKE ? ESCAPE '\\')")
            escaped = search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            params.extend([f"%{escaped}%", f"%{escaped}%"])
        if smart_code_prefix:
            clause, clause_params = _prefix_clause("smart_code", smart_code_prefix)
            where.append(clause)
            params.extend(clause_params)

        where_sql = " AND ".join(where)
        with self._get_connection() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM core_entities WHERE {where_sql}", params
            ).fetchone()[0]
            rows = conn.execute(
                f"""
                SELECT * FROM core_entities
                WHERE {where_sql}
                ORDER BY created_at ASC, rowid ASC
                LIMIT ? OFFSET ?
                """,
                [*params, limit, offset],
            ).fetchall()
            return [_row_to_entity(row) for row in rows], total

    async def get_entity_dependencies(
        self, organization_id: str, entity_id: str
    ) -> EntityDependencies:
        """Count rows that reference an entity."""
        with self._get_connection() as conn:
            deps = EntityDependencies()
            deps.dynamic_fields = conn.execute(
                "SELECT COUNT(*) FROM core_dynamic_data"
                " WHERE organization_id = ? AND entity_id = ?",
                (organization_id, entity_id),
            ).fetchone()[0]
            deps.relationships = conn.execute(
                """
                SELECT COUNT(*) FROM core_relationships
                WHERE organization_id = ? AND (from_entity_id = ? OR to_entity_id = ?)
                """,
                (organization_id, entity_id, entity_id),
            ).fetchone()[0]
            deps.transactions = conn.execute(
                """
                SELECT COUNT(*) FROM universal_transactions
                WHERE organization_id = ? AND (source_entity_id = ? OR target_entity_id = ?)
                """,
                (organization_id, entity_id, entity_id),
            ).fetchone()[0]
            deps.transaction_lines = conn.execute(
                """
                SELECT COUNT(*) FROM universal_transaction_lines
                WHERE organization_id = ? AND line_entity_id = ?
                """,
                (organization_id, entity_id),
            ).fetchone()[0]
            return deps

    async def delete_entity(self, organization_id: str, entity_id: str) -> bool:
        """Hard delete an entity row.

        Referencing rows are rejected by foreign keys; callers check
        get_entity_dependencies() first.

        Returns:
            True if deleted, False if not found
        """
        with self._unit_of_work() as conn:
            cursor = conn.execute(
                "DELETE FROM core_entities WHERE organization_id = ? AND id = ?",
                (organization_id, entity_id),
            )
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Dynamic data
    # ------------------------------------------------------------------

    def _upsert_fields(
        self,
        conn: sqlite3.Connection,
        organization_id: str,
        entity_id: str,
        fields: Sequence[DynamicFieldInput],
        actor: str | None,
        now: str,
    ) -> list[DynamicField]:
        """Upsert fields inside an open unit of work (last write wins)."""
        for item in fields:
            columns = field_value_to_columns(item.value)
            conn.execute(
                """
                INSERT INTO core_dynamic_data
                    (id, organization_id, entity_id, field_name, field_type,
                     field_value_text, field_value_number, field_value_boolean,
                     field_value_date, field_value_json, smart_code,
                     created_by, updated_by, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (organization_id, entity_id, field_name) DO UPDATE SET
                    field_type = excluded.field_type,
                    field_value_text = excluded.field_value_text,
                    field_value_number = excluded.field_value_number,
                    field_value_boolean = excluded.field_value_boolean,
                    field_value_date = excluded.field_value_date,
                    field_value_json = excluded.field_value_json,
                    smart_code = excluded.smart_code,
                    updated_by = excluded.updated_by,
                    updated_at = excluded.updated_at
                """,
                (
                    str(uuid.uuid4()),
                    organization_id,
                    entity_id,
                    item.field_name,
                    item.value.field_type.value,
                    columns["field_value_text"],
                    columns["field_value_number"],
                    columns["field_value_boolean"],
                    columns["field_value_date"],
                    columns["field_value_json"],
                    item.smart_code,
                    actor,
                    actor,
                    now,
                    now,
                ),
            )

        if not fields:
            return []
        names = [item.field_name for item in fields]
        rows = conn.execute(
            f"""
            SELECT * FROM core_dynamic_data
            WHERE organization_id = ? AND entity_id = ? AND field_name IN ({_placeholders(names)})
            ORDER BY field_name
            """,
            (organization_id, entity_id, *names),
        ).fetchall()
        return [_row_to_field(row) for row in rows]

    async def upsert_dynamic_fields(
        self,
        organization_id: str,
        entity_id: str,
        fields: Sequence[DynamicFieldInput],
        actor: str | None,
    ) -> list[DynamicField]:
        """Upsert a batch of fields on one entity in a single unit of work.

        Returns:
            The written field rows
        """
        with self._unit_of_work() as conn:
            written = self._upsert_fields(
                conn, organization_id, entity_id, fields, actor, utc_now()
            )

        logger.debug(
            "Upserted dynamic fields",
            extra={
                "organization_id": organization_id,
                "entity_id": entity_id,
                "count": len(written),
            },
        )
        return written

    async def get_dynamic_fields(
        self,
        organization_id: str,
        entity_ids: Sequence[str],
        field_names: Sequence[str] | None = None,
    ) -> list[DynamicField]:
        """Get fields for one or more entities in a single read."""
        ids = list(dict.fromkeys(entity_ids))
        if not ids:
            return []
        query = f"""
            SELECT * FROM core_dynamic_data
            WHERE organization_id = ? AND entity_id IN ({_placeholders(ids)})
        """
        params: list[Any] = [organization_id, *ids]
        if field_names:
            query += f" AND field_name IN ({_placeholders(field_names)})"
            params.extend(field_names)
        query += " ORDER BY entity_id, field_name"

        with self._get_connection() as conn:
            return [_row_to_field(row) for row in conn.execute(query, params).fetchall()]

    async def delete_dynamic_field(
        self, organization_id: str, entity_id: str, field_name: str
    ) -> bool:
        with self._unit_of_work() as conn:
            cursor = conn.execute(
                """
                DELETE FROM core_dynamic_data
                WHERE organization_id = ? AND entity_id = ? AND field_name = ?
                """,
                (organization_id, entity_id, field_name),
            )
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    def _upsert_edge(
        self,
        conn: sqlite3.Connection,
        organization_id: str,
        relationship_type: str,
        from_entity_id: str,
        to_entity_id: str,
        smart_code: str,
        relationship_data: dict[str, Any],
        is_active: bool,
        actor: str | None,
        now: str,
        relationship_direction: str = "forward",
        relationship_strength: float = 1.0,
        effective_date: str | None = None,
    ) -> None:
        conn.execute(
            """
            INSERT INTO core_relationships
                (id, organization_id, from_entity_id, to_entity_id, relationship_type,
                 relationship_direction, relationship_strength, relationship_data, smart_code,
                 is_active, effective_date, created_by, updated_by, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (organization_id, from_entity_id, to_entity_id, relationship_type)
            DO UPDATE SET
                relationship_direction = excluded.relationship_direction,
                relationship_strength = excluded.relationship_strength,
                relationship_data = excluded.relationship_data,
                smart_code = excluded.smart_code,
                is_active = excluded.is_active,
                effective_date = excluded.effective_date,
                updated_by = excluded.updated_by,
                updated_at = excluded.updated_at
            """,
            (
                str(uuid.uuid4()),
                organization_id,
                from_entity_id,
                to_entity_id,
                relationship_type,
                relationship_direction,
                relationship_strength,
                json.dumps(relationship_data),
                smart_code,
                int(is_active),
                effective_date or now,
                actor,
                actor,
                now,
                now,
            ),
        )

    def _fetch_edge(
        self,
        conn: sqlite3.Connection,
        organization_id: str,
        relationship_type: str,
        from_entity_id: str,
        to_entity_id: str,
    ) -> Relationship:
        row = conn.execute(
            _RELATIONSHIP_SELECT
            + """
            WHERE r.organization_id = ? AND r.relationship_type = ?
              AND r.from_entity_id = ? AND r.to_entity_id = ?
            """,
            (organization_id, relationship_type, from_entity_id, to_entity_id),
        ).fetchone()
        return _row_to_relationship(row)

    async def upsert_relationship(
        self,
        organization_id: str,
        relationship_type: str,
        from_entity_id: str,
        to_entity_id: str,
        smart_code: str,
        relationship_data: dict[str, Any] | None = None,
        is_active: bool = True,
        actor: str | None = None,
        relationship_direction: str = "forward",
        relationship_strength: float = 1.0,
        effective_date: str | None = None,
    ) -> Relationship:
        """Create or update the edge keyed by (from, to, type)."""
        now = utc_now()
        with self._unit_of_work() as conn:
            self._upsert_edge(
                conn, organization_id, relationship_type, from_entity_id, to_entity_id,
                smart_code, relationship_data or {}, is_active, actor, now,
                relationship_direction, relationship_strength, effective_date,
            )
            return self._fetch_edge(
                conn, organization_id, relationship_type, from_entity_id, to_entity_id
            )

    async def upsert_exclusive_relationship(
        self,
        organization_id: str,
        relationship_type: str,
        from_entity_id: str,
        to_entity_id: str,
        smart_code: str,
        relationship_data: dict[str, Any] | None = None,
        actor: str | None = None,
    ) -> tuple[Relationship, int]:
        """Activate one edge and deactivate the source's other edges of that type.

        Returns:
            Tuple of (active edge, number of edges deactivated)
        """
        now = utc_now()
        with self._unit_of_work() as conn:
            cursor = conn.execute(
                """
                UPDATE core_relationships
                SET is_active = 0, updated_by = ?, updated_at = ?
                WHERE organization_id = ? AND relationship_type = ?
                  AND from_entity_id = ? AND to_entity_id != ? AND is_active = 1
                """,
                (actor, now, organization_id, relationship_type, from_entity_id, to_entity_id),
            )
            deactivated = cursor.rowcount
            self._upsert_edge(
                conn, organization_id, relationship_type, from_entity_id, to_entity_id,
                smart_code, relationship_data or {}, True, actor, now,
            )
            edge = self._fetch_edge(
                conn, organization_id, relationship_type, from_entity_id, to_entity_id
            )
        return edge, deactivated

    async def replace_relationships(
        self,
        organization_id: str,
        relationship_type: str,
        smart_code: str,
        pairs: Sequence[tuple[str, str, dict[str, Any]]],
        is_active: bool = True,
        actor: str | None = None,
        sources: Sequence[str] | None = None,
    ) -> tuple[list[Relationship], int]:
        """Replace every edge of a type from each distinct source in pairs.

        Delete-then-insert in one unit of work: after the call, each source's
        edge set of relationship_type is exactly what pairs lists for it.

        Args:
            organization_id: Owning tenant
            relationship_type: Edge type being replaced
            smart_code: Smart code stamped on new edges
            pairs: (from_entity_id, to_entity_id, relationship_data) tuples
            is_active: Active flag for new edges
            actor: Actor stamp
            sources: Sources to clear; defaults to the sources named in pairs.
                Pass explicitly to clear a source down to an empty set.

        Returns:
            Tuple of (inserted edges, number of edges removed)
        """
        now = utc_now()
        if sources is None:
            sources = [pair[0] for pair in pairs]
        sources = list(dict.fromkeys(sources))
        if not sources:
            return [], 0
        with self._unit_of_work() as conn:
            cursor = conn.execute(
                f"""
                DELETE FROM core_relationships
                WHERE organization_id = ? AND relationship_type = ?
                  AND from_entity_id IN ({_placeholders(sources)})
                """,
                (organization_id, relationship_type, *sources),
            )
            removed = cursor.rowcount
            for from_id, to_id, data in pairs:
                self._upsert_edge(
                    conn, organization_id, relationship_type, from_id, to_id,
                    smart_code, data, is_active, actor, now,
                )
            inserted = [
                self._fetch_edge(conn, organization_id, relationship_type, from_id, to_id)
                for from_id, to_id in dict.fromkeys((p[0], p[1]) for p in pairs)
            ]

        logger.debug(
            "Replaced relationships",
            extra={
                "organization_id": organization_id,
                "relationship_type": relationship_type,
                "sources": len(sources),
                "removed": removed,
                "inserted": len(inserted),
            },
        )
        return inserted, removed

    async def get_relationship(
        self, organization_id: str, relationship_id: str
    ) -> Relationship | None:
        with self._get_connection() as conn:
            row = conn.execute(
                _RELATIONSHIP_SELECT + " WHERE r.organization_id = ? AND r.id = ?",
                (organization_id, relationship_id),
            ).fetchone()
            return _row_to_relationship(row) if row else None

    async def query_relationships(
        self,
        organization_id: str,
        from_entity_id: str | None = None,
        to_entity_id: str | None = None,
        relationship_type: str | None = None,
        include_inactive: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Relationship]:
        """Query edges with resolved endpoint names.

        Active edges only unless include_inactive is set.
        """
        query = _RELATIONSHIP_SELECT + " WHERE r.organization_id = ?"
        params: list[Any] = [organization_id]

        if from_entity_id is not None:
            query += " AND r.from_entity_id = ?"
            params.append(from_entity_id)
        if to_entity_id is not None:
            query += " AND r.to_entity_id = ?"
            params.append(to_entity_id)
        if relationship_type is not None:
            query += " AND r.relationship_type = ?"
            params.append(relationship_type)
        if not include_inactive:
            query += " AND r.is_active = 1"

        query += " ORDER BY r.created_at ASC, r.rowid ASC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        with self._get_connection() as conn:
            return [_row_to_relationship(row) for row in conn.execute(query, params).fetchall()]

    async def get_outgoing_relationships(
        self, organization_id: str, entity_ids: Sequence[str]
    ) -> dict[str, list[Relationship]]:
        """Active edges leaving each entity, fetched in one batched read.

        Returns:
            Mapping of entity_id -> edges (every requested id is present)
        """
        ids = list(dict.fromkeys(entity_ids))
        grouped: dict[str, list[Relationship]] = {entity_id: [] for entity_id in ids}
        if not ids:
            return grouped
        query = (
            _RELATIONSHIP_SELECT
            + " WHERE r.organization_id = ? AND r.is_active = 1"
            f" AND r.from_entity_id IN ({_placeholders(ids)})"
            " ORDER BY r.created_at ASC, r.rowid ASC"
        )
        with self._get_connection() as conn:
            for row in conn.execute(query, (organization_id, *ids)).fetchall():
                edge = _row_to_relationship(row)
                grouped[edge.from_entity_id].append(edge)
        return grouped

    async def delete_relationship(self, organization_id: str, relationship_id: str) -> bool:
        with self._unit_of_work() as conn:
            cursor = conn.execute(
                "DELETE FROM core_relationships WHERE organization_id = ? AND id = ?",
                (organization_id, relationship_id),
            )
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    async def create_transaction(
        self,
        transaction: Transaction,
        lines: Sequence[TransactionLine],
    ) -> None:
        """Insert a header and all its lines as one unit of work.

        Raises:
            DuplicateKeyError: If external_reference is already used
        """
        try:
            with self._unit_of_work() as conn:
                conn.execute(
                    """
                    INSERT INTO universal_transactions
                        (id, organization_id, transaction_type, transaction_code, smart_code,
                         transaction_status, total_amount, transaction_date, source_entity_id,
                         target_entity_id, external_reference, metadata, created_by,
                         updated_by, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        transaction.id,
                        transaction.organization_id,
                        transaction.transaction_type,
                        transaction.transaction_code,
                        transaction.smart_code,
                        transaction.transaction_status,
                        transaction.total_amount,
                        transaction.transaction_date,
                        transaction.source_entity_id,
                        transaction.target_entity_id,
                        transaction.external_reference,
                        json.dumps(transaction.metadata),
                        transaction.created_by,
                        transaction.updated_by,
                        transaction.created_at,
                        transaction.updated_at,
                    ),
                )
                conn.executemany(
                    """
                    INSERT INTO universal_transaction_lines
                        (id, organization_id, transaction_id, line_number, line_type,
                         description, line_entity_id, quantity, unit_amount, line_amount,
                         smart_code, line_data, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            line.id,
                            line.organization_id,
                            line.transaction_id,
                            line.line_number,
                            line.line_type,
                            line.description,
                            line.line_entity_id,
                            line.quantity,
                            line.unit_amount,
                            line.line_amount,
                            line.smart_code,
                            json.dumps(line.line_data),
                            line.created_at,
                        )
                        for line in lines
                    ],
                )
        except sqlite3.IntegrityError as e:
            raise DuplicateKeyError("external_reference", str(e)) from e

        logger.debug(
            "Created transaction",
            extra={
                "organization_id": transaction.organization_id,
                "transaction_id": transaction.id,
                "transaction_type": transaction.transaction_type,
                "lines": len(lines),
            },
        )

    async def get_transaction(
        self,
        organization_id: str,
        transaction_id: str,
        include_deleted: bool = DEFAULT_INCLUDE_DELETED,
    ) -> Transaction | None:
        """Read one transaction header.

        This is the direct read primitive; voided transactions are hidden
        unless include_deleted is True.
        """
        visibility, visibility_params = transaction_visibility(include_deleted)
        with self._get_connection() as conn:
            row = conn.execute(
                f"""
                SELECT * FROM universal_transactions
                WHERE organization_id = ? AND id = ? AND {visibility}
                """,
                (organization_id, transaction_id, *visibility_params),
            ).fetchone()
            return _row_to_transaction(row) if row else None

    async def find_transaction_by_external_reference(
        self, organization_id: str, external_reference: str
    ) -> Transaction | None:
        """Look up an idempotency key, voided transactions included."""
        with self._get_connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM universal_transactions
                WHERE organization_id = ? AND external_reference = ?
                """,
                (organization_id, external_reference),
            ).fetchone()
            return _row_to_transaction(row) if row else None

    async def get_transaction_lines(
        self,
        organization_id: str,
        transaction_ids: Sequence[str],
    ) -> dict[str, list[TransactionLine]]:
        """Fetch lines for many transactions in one read, grouped by transaction_id."""
        ids = list(dict.fromkeys(transaction_ids))
        grouped: dict[str, list[TransactionLine]] = {txn_id: [] for txn_id in ids}
        if not ids:
            return grouped
        with self._get_connection() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM universal_transaction_lines
                WHERE organization_id = ? AND transaction_id IN ({_placeholders(ids)})
                ORDER BY transaction_id, line_number
                """,
                (organization_id, *ids),
            ).fetchall()
        for row in rows:
            grouped[row["transaction_id"]].append(_row_to_line(row))
        return grouped

    async def query_transactions(
        self,
        organization_id: str,
        source_entity_id: str | None = None,
        target_entity_id: str | None = None,
        transaction_type: str | None = None,
        transaction_status: str | None = None,
        smart_code_prefix: str | None = None,
        date_from: str | None = None,
        date_to: str | None = None,
        include_deleted: bool = DEFAULT_INCLUDE_DELETED,
        limit: int = 100,
        offset: int = 0,
    ) -> tuple[list[Transaction], int]:
        """Query transaction headers, newest transaction_date first.

        Returns:
            Tuple of (page, total matching rows)
        """
        visibility, visibility_params = transaction_visibility(include_deleted)
        where = ["organization_id = ?", visibility]
        params: list[Any] = [organization_id, *visibility_params]

        if source_entity_id is not None:
            where.append("source_entity_id = ?")
            params.append(source_entity_id)
        if target_entity_id is not None:
            where.append("target_entity_id = ?")
            params.append(target_entity_id)
        if transaction_type is not None:
            where.append("transaction_type = ?")
            params.append(transaction_type)
        if transaction_status is not None:
            where.append("transaction_status = ?")
            params.append(transaction_status)
        if smart_code_prefix:
            clause, clause_params = _prefix_clause("smart_code", smart_code_prefix)
            where.append(clause)
            params.extend(clause_params)
        if date_from is not None:
            where.append("transaction_date >= ?")
            params.append(date_from)
        if date_to is not None:
            where.append("transaction_date <= ?")
            params.append(date_to)

        where_sql = " AND ".join(where)
        with self._get_connection() as conn:
            total = conn.execute(
                f"SELECT COUNT(*) FROM universal_transactions WHERE {where_sql}", params
            ).fetchone()[0]
            rows = conn.execute(
                f"""
                SELECT * FROM universal_transactions
                WHERE {where_sql}
                ORDER BY transaction_date DESC, rowid DESC
                LIMIT ? OFFSET ?
                """,
                [*params, limit, offset],
            ).fetchall()
            return [_row_to_transaction(row) for row in rows], total

    async def update_transaction(
        self,
        organization_id: str,
        transaction_id: str,
        actor: str | None,
        transaction_status: str | None = None,
        transaction_code: str | None = None,
        metadata_patch: dict[str, Any] | None = None,
        expected_status: str | None = None,
    ) -> Transaction | None:
        """Update header fields of a visible transaction. Lines are never touched.

        Args:
            expected_status: When set, the write only happens if the row still
                has this status when re-read inside the unit of work

        Returns:
            Updated Transaction or None if not found (voided counts as not found)

        Raises:
            StatusChangedError: If the row's status is no longer expected_status
        """
        now = utc_now()
        visibility, visibility_params = transaction_visibility()
        with self._unit_of_work() as conn:
            row = conn.execute(
                f"""
                SELECT * FROM universal_transactions
                WHERE organization_id = ? AND id = ? AND {visibility}
                """,
                (organization_id, transaction_id, *visibility_params),
            ).fetchone()
            if not row:
                return None

            transaction = _row_to_transaction(row)
            if expected_status is not None and transaction.transaction_status != expected_status:
                raise StatusChangedError(expected_status, transaction.transaction_status)
            if transaction_status is not None:
                transaction.transaction_status = transaction_status
            if transaction_code is not None:
                transaction.transaction_code = transaction_code
            if metadata_patch:
                transaction.metadata.update(metadata_patch)
            transaction.updated_by = actor
            transaction.updated_at = now

            conn.execute(
                """
                UPDATE universal_transactions
                SET transaction_status = ?, transaction_code = ?, metadata = ?,
                    updated_by = ?, updated_at = ?
                WHERE organization_id = ? AND id = ?
                """,
                (transaction.transaction_status, transaction.transaction_code,
                 json.dumps(transaction.metadata), actor, now, organization_id, transaction_id),
            )
            return transaction

    async def void_transaction(
        self,
        organization_id: str,
        transaction_id: str,
        reason: str | None,
        actor: str | None,
    ) -> tuple[Transaction | None, bool]:
        """Mark a transaction voided. Lines and rows are kept.

        Idempotent: voiding an already-voided transaction changes nothing.

        Returns:
            Tuple of (transaction or None if absent, already_voided)
        """
        now = utc_now()
        voided = TransactionStatus.VOIDED.value
        with self._unit_of_work() as conn:
            row = conn.execute(
                "SELECT * FROM universal_transactions WHERE organization_id = ? AND id = ?",
                (organization_id, transaction_id),
            ).fetchone()
            if not row:
                return None, False

            transaction = _row_to_transaction(row)
            if transaction.transaction_status == voided:
                return transaction, True

            transaction.metadata.update(
                {
                    "void_reason": reason,
                    "voided_at": now,
                    "voided_by": actor,
                    "status_before_void": transaction.transaction_status,
                }
            )
            transaction.transaction_status = voided
            transaction.updated_by = actor
            transaction.updated_at = now
            conn.execute(
                """
                UPDATE universal_transactions
                SET transaction_status = ?, metadata = ?, updated_by = ?, updated_at = ?
                WHERE organization_id = ? AND id = ? AND transaction_status != ?
                """,
                (voided, json.dumps(transaction.metadata), actor, now,
                 organization_id, transaction_id, voided),
            )

        logger.info(
            "Voided transaction",
            extra={"organization_id": organization_id, "transaction_id": transaction_id},
        )
        return transaction, False

    async def delete_draft_transaction(self, organization_id: str, transaction_id: str) -> bool:
        """Hard delete a draft transaction that has no lines.

        Returns:
            True if deleted, False if absent or not deletable
        """
        with self._unit_of_work() as conn:
            cursor = conn.execute(
                """
                DELETE FROM universal_transactions
                WHERE organization_id = ? AND id = ? AND transaction_status = ?
                  AND NOT EXISTS (
                      SELECT 1 FROM universal_transaction_lines l
                      WHERE l.transaction_id = universal_transactions.id
                  )
                """,
                (organization_id, transaction_id, TransactionStatus.DRAFT.value),
            )
            return cursor.rowcount > 0

    async def get_stats(self, organization_id: str) -> dict[str, int]:
        """Row counts per universal table for one organization."""
        tables = {
            "entities": "core_entities",
            "dynamic_data": "core_dynamic_data",
            "relationships": "core_relationships",
            "transactions": "universal_transactions",
            "transaction_lines": "universal_transaction_lines",
        }
        with self._get_connection() as conn:
            return {
                name: conn.execute(
                    f"SELECT COUNT(*) FROM {table} WHERE organization_id = ?",
                    (organization_id,),
                ).fetchone()[0]
                for name, table in tables.items()
            }
