import sqlite3
from contextlib import contextmanager
from typing import Callable, Iterable, Iterator

try:
    import psycopg2
    import psycopg2.extras
except ImportError:  # pragma: no cover - optional dependency for postgres
    psycopg2 = None

from flask import current_app, g


ITEM_STATUS_CHECK = (
    "'draft','pending','approved','rejected','recheck','ready_for_cc','cc_pending','cc_approved',"
    "'cc_rejected','ready_for_po','pending_po','sign_pending','sign_rejected','rejected_po','direct_po',"
    "'delivery_stage','ready_for_delivery','out_for_delivery','delivered'"
)
DIRECT_ACTION_CHECK = "'po','delivery','all','split_po','split_delivery','split_po_delivery'"
PURCHASE_ORDER_STATUS_CHECK = "'sign_pending','sign_rejected','approved'"
COST_COMPARISON_STATUS_CHECK = "'draft','cc_pending','cc_approved','cc_rejected'"


class Database:
    def __init__(self, backend: str, connection):
        self.backend = backend
        self._conn = connection
        self._depth = 0
        self._after_commit: list[Callable[[], None]] = []

    def execute(self, sql: str, params: Iterable | None = None):
        if self.backend == "postgres":
            cursor = self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            if params:
                sql = _convert_qmark_to_pg(sql)
                cursor.execute(sql, list(params))
            else:
                cursor.execute(sql)
            return cursor
        return self._conn.execute(sql, params or ())

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @contextmanager
    def transaction(self) -> Iterator["Database"]:
        """Run the block in one transaction; nested calls join the outer one."""
        if self._depth:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            return

        self._begin()
        self._depth = 1
        try:
            yield self
        except BaseException:
            self._depth = 0
            self._after_commit = []
            self._rollback()
            raise
        self._depth = 0
        self._commit()
        callbacks, self._after_commit = self._after_commit, []
        for callback in callbacks:
            callback()

    def on_commit(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` once the outermost transaction commits (immediately outside one)."""
        if not self._depth:
            callback()
            return
        self._after_commit.append(callback)

    def _begin(self) -> None:
        if self.backend == "postgres":
            self._conn.autocommit = False
            return
        self._conn.execute("BEGIN IMMEDIATE")

    def _commit(self) -> None:
        if self.backend == "postgres":
            try:
                self._conn.commit()
            finally:
                self._conn.autocommit = True
            return
        self._conn.execute("COMMIT")

    def _rollback(self) -> None:
        if self.backend == "postgres":
            try:
                self._conn.rollback()
            finally:
                self._conn.autocommit = True
            return
        if self._conn.in_transaction:
            self._conn.execute("ROLLBACK")

    def commit(self):
        if not self._depth:
            self._conn.commit()

    def close(self):
        self._conn.close()


def _convert_qmark_to_pg(sql: str) -> str:
    return sql.replace("?", "%s")


def connect_database(db_path: str, *, timeout: float = 30.0) -> Database:
    if db_path.lower().startswith("postgres"):
        if psycopg2 is None:
            raise RuntimeError("psycopg2 is not installed.")
        conn = psycopg2.connect(db_path)
        conn.autocommit = True
        return Database("postgres", conn)

    # Autocommit mode; Database.transaction issues BEGIN IMMEDIATE itself.
    conn = sqlite3.connect(db_path, timeout=timeout, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return Database("sqlite", conn)


def connection_factory(app=None):
    """Return a zero-argument callable opening a fresh connection for worker threads."""
    app = app or current_app._get_current_object()
    db_path = app.config["DB_PATH"]
    timeout = float(app.config.get("SQLITE_BUSY_TIMEOUT_SECONDS", 30))

    def _open() -> Database:
        return connect_database(db_path, timeout=timeout)

    return _open


def get_db():
    if "db" not in g:
        g.db = connect_database(
            current_app.config["DB_PATH"],
            timeout=float(current_app.config.get("SQLITE_BUSY_TIMEOUT_SECONDS", 30)),
        )
    return g.db


def close_db(_error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def init_db():
    create_schema(get_db())


def create_schema(db) -> None:
    if db.backend == "postgres":
        _init_db_postgres(db)
        return

    _init_db_sqlite(db)


def _init_db_sqlite(db: Database):
    for statement in _schema_statements(
        pk="INTEGER PRIMARY KEY AUTOINCREMENT",
        timestamp="TEXT",
        real="REAL",
    ):
        db.execute(statement)


def _init_db_postgres(db: Database) -> None:
    for statement in _schema_statements(
        pk="SERIAL PRIMARY KEY",
        timestamp="TIMESTAMP",
        real="DOUBLE PRECISION",
    ):
        db.execute(statement)


def _schema_statements(*, pk: str, timestamp: str, real: str) -> list[str]:
    return [
        f"""
        CREATE TABLE IF NOT EXISTS actors (
            id TEXT NOT NULL,
            display_name TEXT,
            role TEXT NOT NULL CHECK (role IN ('site_engineer','manager','purchase_officer')),
            active INTEGER NOT NULL DEFAULT 1,
            tenant_id TEXT NOT NULL,
            created_at {timestamp} NOT NULL DEFAULT CURRENT_TIMESTAMP,
            PRIMARY KEY (id, tenant_id)
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS vendors (
            id {pk},
            name TEXT NOT NULL,
            active INTEGER NOT NULL DEFAULT 1,
            tenant_id TEXT NOT NULL,
            created_at {timestamp} NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS inventory_items (
            id {pk},
            item_name TEXT NOT NULL,
            unit TEXT,
            central_stock {real} NOT NULL DEFAULT 0,
            tenant_id TEXT NOT NULL,
            updated_at {timestamp} NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS request_items (
            id {pk},
            request_number TEXT NOT NULL,
            item_order INTEGER NOT NULL,
            item_name TEXT NOT NULL,
            quantity {real} NOT NULL CHECK (quantity > 0),
            unit TEXT,
            description TEXT,
            specs TEXT,
            brand TEXT,
            is_urgent INTEGER NOT NULL DEFAULT 0,
            required_by TEXT,
            site_id TEXT,
            status TEXT NOT NULL DEFAULT 'draft' CHECK (status IN ({ITEM_STATUS_CHECK})),
            rejection_reason TEXT,
            direct_action TEXT CHECK (direct_action IS NULL OR direct_action IN ({DIRECT_ACTION_CHECK})),
            is_split_approved INTEGER NOT NULL DEFAULT 0,
            split_from_id INTEGER,
            created_by TEXT NOT NULL,
            approved_by TEXT,
            approved_at TEXT,
            delivery_marked_at TEXT,
            tenant_id TEXT NOT NULL,
            created_at {timestamp} NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at {timestamp} NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE (tenant_id, request_number, item_order)
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS purchase_orders (
            id {pk},
            po_number TEXT NOT NULL,
            vendor_id INTEGER NOT NULL,
            request_item_id INTEGER NOT NULL,
            quantity {real} NOT NULL,
            unit TEXT,
            unit_price {real} NOT NULL,
            total_price {real} NOT NULL,
            status TEXT NOT NULL DEFAULT 'sign_pending' CHECK (status IN ({PURCHASE_ORDER_STATUS_CHECK})),
            rejection_reason TEXT,
            created_by TEXT NOT NULL,
            signed_by TEXT,
            signed_at TEXT,
            tenant_id TEXT NOT NULL,
            created_at {timestamp} NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at {timestamp} NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS cost_comparisons (
            id {pk},
            request_item_id INTEGER NOT NULL,
            vendor_quotes TEXT NOT NULL DEFAULT '[]',
            is_direct_delivery INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL DEFAULT 'draft' CHECK (status IN ({COST_COMPARISON_STATUS_CHECK})),
            selected_vendor_id INTEGER,
            manager_notes TEXT,
            created_by TEXT NOT NULL,
            reviewed_by TEXT,
            approved_at TEXT,
            rejected_at TEXT,
            tenant_id TEXT NOT NULL,
            created_at {timestamp} NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at {timestamp} NOT NULL DEFAULT CURRENT_TIMESTAMP,
            UNIQUE (tenant_id, request_item_id)
        )
        """,
        f"""
        CREATE TABLE IF NOT EXISTS status_events (
            id {pk},
            entity TEXT NOT NULL,
            entity_id TEXT NOT NULL,
            from_status TEXT,
            to_status TEXT,
            reason TEXT,
            actor_id TEXT,
            tenant_id TEXT NOT NULL,
            occurred_at {timestamp} NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS document_counters (
            tenant_id TEXT NOT NULL,
            name TEXT NOT NULL,
            value INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (tenant_id, name)
        )
        """,
        "CREATE INDEX IF NOT EXISTS idx_request_items_group ON request_items (tenant_id, request_number)",
        "CREATE INDEX IF NOT EXISTS idx_request_items_status ON request_items (tenant_id, status)",
        "CREATE INDEX IF NOT EXISTS idx_purchase_orders_number ON purchase_orders (tenant_id, po_number)",
        "CREATE INDEX IF NOT EXISTS idx_purchase_orders_item ON purchase_orders (tenant_id, request_item_id)",
        "CREATE INDEX IF NOT EXISTS idx_inventory_items_name ON inventory_items (tenant_id, item_name)",
        "CREATE INDEX IF NOT EXISTS idx_status_events_entity ON status_events (tenant_id, entity, entity_id)",
    ]
