"""
Repository pattern for data access.

Handles database operations and data persistence logic for expense
bills, sync history and the auto-sync configuration row.
"""

import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Iterable, List, Optional, Tuple

import structlog

from usage_monitor.core.errors import ConcurrencyError, PersistenceError, ValidationError
from usage_monitor.core.transform import validate_expense_bill
from .db import DEFAULT_DB_PATH, get_connection
from .models import AutoSyncConfig, ExpenseBill, HistoryPage, SyncHistory, SyncState

logger = structlog.get_logger(__name__)

STALE_SYNC_AFTER = timedelta(minutes=10)
STALE_SYNC_MESSAGE = "Sync marked as failed due to timeout"

BILL_COLUMNS = (
    "billing_no",
    "charge_name",
    "charge_type",
    "model_name",
    "use_group_name",
    "group_name",
    "use_group_id",
    "group_id",
    "order_time",
    "charge_unit_symbol",
    "discount_rate",
    "cost_rate",
    "cash_cost",
    "trial_cash_cost",
    "charge_unit",
    "charge_count",
    "time_window",
    "time_window_start",
    "time_window_end",
    "transaction_time",
    "create_time",
    "api_key",
    "model_code",
    "model_product_name",
    "payment_type",
    "currency",
    "billing_status",
    "settlement_amount",
    "due_amount",
    "paid_amount",
    "token_type",
    "token_resource_name",
)

_DECIMAL_COLUMNS = {
    "discount_rate",
    "cost_rate",
    "cash_cost",
    "trial_cash_cost",
    "charge_unit",
    "charge_count",
    "settlement_amount",
    "due_amount",
    "paid_amount",
}
_DATETIME_COLUMNS = {"time_window_start", "time_window_end", "transaction_time", "create_time"}

# create_time keeps the first-seen timestamp on update
_UPDATABLE_COLUMNS = tuple(c for c in BILL_COLUMNS if c not in ("billing_no", "create_time"))

_INSERT_BILL_SQL = "INSERT INTO expense_bills ({}) VALUES ({})".format(
    ", ".join(BILL_COLUMNS), ", ".join("?" for _ in BILL_COLUMNS)
)
_UPDATE_BILL_SQL = "UPDATE expense_bills SET {} WHERE billing_no = ?".format(
    ", ".join(f"{c} = ?" for c in _UPDATABLE_COLUMNS)
)
_UPSERT_BILL_SQL = _INSERT_BILL_SQL + " ON CONFLICT(billing_no) DO UPDATE SET {}".format(
    ", ".join(f"{c} = excluded.{c}" for c in _UPDATABLE_COLUMNS)
)

_SYNC_HISTORY_COLUMNS = """
    id, sync_type, start_time, end_time, status, records_synced,
    total_records, failed_count, total_pages, page_synced,
    error_message, billing_month
"""


def _to_db(moment: Optional[datetime]) -> Optional[str]:
    if moment is None:
        return None
    return moment.isoformat(sep=" ")


def _from_db(text: Optional[str]) -> Optional[datetime]:
    if not text:
        return None
    return datetime.fromisoformat(text)


def _bill_value(bill: ExpenseBill, column: str) -> Any:
    value = getattr(bill, column)
    if column in _DECIMAL_COLUMNS:
        return float(value)
    if column in _DATETIME_COLUMNS:
        return _to_db(value)
    return value


def _insert_params(bill: ExpenseBill) -> Tuple[Any, ...]:
    return tuple(_bill_value(bill, c) for c in BILL_COLUMNS)


def _update_params(bill: ExpenseBill) -> Tuple[Any, ...]:
    return tuple(_bill_value(bill, c) for c in _UPDATABLE_COLUMNS) + (bill.billing_no,)


def _row_to_bill(row: sqlite3.Row) -> ExpenseBill:
    values = {"id": row["id"]}
    for column in BILL_COLUMNS:
        raw = row[column]
        if column in _DECIMAL_COLUMNS:
            values[column] = Decimal(str(raw)) if raw is not None else Decimal("0")
        elif column in _DATETIME_COLUMNS:
            values[column] = _from_db(raw)
        else:
            values[column] = raw if raw is not None else ""
    return ExpenseBill(**values)


def _row_to_history(row: sqlite3.Row) -> SyncHistory:
    return SyncHistory(
        id=row["id"],
        sync_type=row["sync_type"],
        start_time=_from_db(row["start_time"]),
        end_time=_from_db(row["end_time"]),
        status=SyncState(row["status"]),
        records_synced=row["records_synced"],
        total_records=row["total_records"],
        failed_count=row["failed_count"],
        total_pages=row["total_pages"],
        page_synced=row["page_synced"],
        error_message=row["error_message"],
        billing_month=row["billing_month"] or "",
    )


@dataclass(frozen=True)
class BatchWriteResult:
    """Outcome of one batch write transaction."""
    written: int
    skipped: int


class BillRepository:
    """Idempotent storage for expense bills keyed by billing_no."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def upsert(self, bill: ExpenseBill) -> bool:
        """Insert the bill, or update every column if billing_no exists.

        The existence check and the write share one transaction.

        Args:
            bill: Validated expense bill

        Returns:
            True if a new row was inserted, False if an existing row was updated

        Raises:
            ValidationError: If the bill fails validation
            PersistenceError: If the write fails (the transaction is rolled back)
        """
        validate_expense_bill(bill)

        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT COUNT(*) FROM expense_bills WHERE billing_no = ?",
                (bill.billing_no,)
            ).fetchone()
            exists = row[0] > 0
            if exists:
                conn.execute(_UPDATE_BILL_SQL, _update_params(bill))
            else:
                conn.execute(_INSERT_BILL_SQL, _insert_params(bill))
            conn.commit()
            return not exists
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(
                f"failed to upsert bill {bill.billing_no}: {e}",
                {"billing_no": bill.billing_no}
            ) from e
        finally:
            conn.close()

    def batch_upsert(self, bills: Iterable[ExpenseBill]) -> BatchWriteResult:
        """Write a batch of bills in a single transaction.

        Invalid bills are logged and skipped. A billing_no that is already
        stored (or repeated inside the batch) updates the existing row and
        counts as written. Any database error rolls back the whole batch.

        Args:
            bills: Bills to persist

        Returns:
            BatchWriteResult with written and skipped counts

        Raises:
            PersistenceError: If any statement fails
        """
        bills = list(bills)
        if not bills:
            return BatchWriteResult(written=0, skipped=0)

        written = 0
        skipped = 0
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            for bill in bills:
                try:
                    validate_expense_bill(bill)
                except ValidationError as e:
                    logger.warning("invalid_bill_skipped", billing_no=bill.billing_no, field=e.field, reason=e.message)
                    skipped += 1
                    continue
                conn.execute(_UPSERT_BILL_SQL, _insert_params(bill))
                written += 1
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error("batch_write_rolled_back", batch_size=len(bills), error=str(e))
            raise PersistenceError(
                f"failed to write batch of {len(bills)} bills: {e}",
                {"batch_size": len(bills)}
            ) from e
        finally:
            conn.close()

        logger.info("batch_written", written=written, skipped=skipped)
        return BatchWriteResult(written=written, skipped=skipped)

    def get_by_id(self, bill_id: int) -> Optional[ExpenseBill]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT * FROM expense_bills WHERE id = ?", (bill_id,)).fetchone()
            return _row_to_bill(row) if row else None
        finally:
            conn.close()

    def get_by_billing_no(self, billing_no: str) -> Optional[ExpenseBill]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM expense_bills WHERE billing_no = ?", (billing_no,)
            ).fetchone()
            return _row_to_bill(row) if row else None
        finally:
            conn.close()

    def count(self) -> int:
        conn = get_connection(self.db_path)
        try:
            return conn.execute("SELECT COUNT(*) FROM expense_bills").fetchone()[0]
        finally:
            conn.close()

    def fetch_recent(self, limit: int = 100) -> List[ExpenseBill]:
        """Fetch bills ordered by transaction time (newest first)."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "SELECT * FROM expense_bills ORDER BY transaction_time DESC, id DESC LIMIT ?",
                (limit,)
            )
            return [_row_to_bill(row) for row in cursor.fetchall()]
        finally:
            conn.close()

    def delete_by_id(self, bill_id: int) -> bool:
        """Delete one bill. Returns False if no row had that id."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("DELETE FROM expense_bills WHERE id = ?", (bill_id,))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def delete_all(self) -> int:
        """Delete every stored bill and return how many rows were removed."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("DELETE FROM expense_bills")
            conn.commit()
            logger.info("all_bills_deleted", rows=cursor.rowcount)
            return cursor.rowcount
        finally:
            conn.close()


class SyncHistoryRepository:
    """Durable sync state. A `running` row is the single-flight lock."""

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        stale_after: timedelta = STALE_SYNC_AFTER,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.db_path = db_path
        self.stale_after = stale_after
        self.clock = clock

    def start(self, sync_type: str, billing_month: str, now: Optional[datetime] = None) -> int:
        """Open a `running` row unless another sync is already running.

        Stale rows are reclaimed first. The existence check and the insert
        are a single statement inside a write-locked transaction.

        Returns:
            Id of the new sync history row

        Raises:
            ConcurrencyError: If a `running` row already exists
        """
        now = now or self.clock()
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            self._fail_stale(conn, now)
            cursor = conn.execute("""
                INSERT INTO sync_history (sync_type, start_time, status, billing_month)
                SELECT ?, ?, ?, ?
                WHERE NOT EXISTS (SELECT 1 FROM sync_history WHERE status = ?)
            """, (
                sync_type,
                _to_db(now),
                SyncState.RUNNING.value,
                billing_month,
                SyncState.RUNNING.value
            ))
            if cursor.rowcount == 0:
                running = conn.execute(
                    "SELECT COUNT(*) FROM sync_history WHERE status = ?",
                    (SyncState.RUNNING.value,)
                ).fetchone()[0]
                conn.commit()
                raise ConcurrencyError(running)
            conn.commit()
            return cursor.lastrowid
        except sqlite3.Error:
            conn.rollback()
            raise
        finally:
            conn.close()

    def finish(
        self,
        sync_id: int,
        status: SyncState,
        records_synced: int = 0,
        total_records: int = 0,
        failed_count: int = 0,
        total_pages: int = 0,
        page_synced: int = 0,
        error_message: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> bool:
        """Move a running sync row to a terminal state and record its counts.

        Rows already failed by the stale sweep or a reset stay as they are.

        Returns:
            False if the row was no longer running
        """
        if status == SyncState.RUNNING:
            raise ValueError("finish() requires a terminal status")

        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                UPDATE sync_history
                SET end_time = ?, status = ?, records_synced = ?, total_records = ?,
                    failed_count = ?, total_pages = ?, page_synced = ?, error_message = ?
                WHERE id = ? AND status = ?
            """, (
                _to_db(now or self.clock()),
                status.value,
                records_synced,
                total_records,
                failed_count,
                total_pages,
                page_synced,
                error_message,
                sync_id,
                SyncState.RUNNING.value
            ))
            conn.commit()
            return cursor.rowcount > 0
        finally:
            conn.close()

    def cleanup_stale(self, now: Optional[datetime] = None) -> int:
        """Fail `running` rows older than the staleness threshold."""
        conn = get_connection(self.db_path)
        try:
            count = self._fail_stale(conn, now or self.clock())
            conn.commit()
            return count
        finally:
            conn.close()

    def _fail_stale(self, conn: sqlite3.Connection, now: datetime) -> int:
        cutoff = now - self.stale_after
        cursor = conn.execute("""
            UPDATE sync_history
            SET status = ?, end_time = ?, error_message = ?
            WHERE status = ? AND start_time < ?
        """, (
            SyncState.FAILED.value,
            _to_db(now),
            STALE_SYNC_MESSAGE,
            SyncState.RUNNING.value,
            _to_db(cutoff)
        ))
        if cursor.rowcount:
            logger.warning("stale_syncs_failed", count=cursor.rowcount, older_than=str(self.stale_after))
        return cursor.rowcount

    def fail_all_running(self, message: str, now: Optional[datetime] = None) -> int:
        """Unconditionally fail every `running` row."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                UPDATE sync_history
                SET status = ?, end_time = ?, error_message = ?
                WHERE status = ?
            """, (
                SyncState.FAILED.value,
                _to_db(now or self.clock()),
                message,
                SyncState.RUNNING.value
            ))
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()

    def count_running(self) -> int:
        """Count `running` rows after reclaiming stale ones."""
        conn = get_connection(self.db_path)
        try:
            self._fail_stale(conn, self.clock())
            conn.commit()
            return conn.execute(
                "SELECT COUNT(*) FROM sync_history WHERE status = ?",
                (SyncState.RUNNING.value,)
            ).fetchone()[0]
        finally:
            conn.close()

    def get(self, sync_id: int) -> Optional[SyncHistory]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_SYNC_HISTORY_COLUMNS} FROM sync_history WHERE id = ?",
                (sync_id,)
            ).fetchone()
            return _row_to_history(row) if row else None
        finally:
            conn.close()

    def latest(self) -> Optional[SyncHistory]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                f"SELECT {_SYNC_HISTORY_COLUMNS} FROM sync_history ORDER BY start_time DESC, id DESC LIMIT 1"
            ).fetchone()
            return _row_to_history(row) if row else None
        finally:
            conn.close()

    def list(self, sync_type: Optional[str] = None, page_num: int = 1, page_size: int = 20) -> HistoryPage:
        """Page through sync history, newest first.

        Page size is clamped to 1..100 and page number to >= 1.
        """
        page_size = max(1, min(page_size, 100))
        page_num = max(1, page_num)

        where = ""
        params: List[Any] = []
        if sync_type:
            where = " WHERE sync_type = ?"
            params.append(sync_type)

        conn = get_connection(self.db_path)
        try:
            total = conn.execute(f"SELECT COUNT(*) FROM sync_history{where}", params).fetchone()[0]
            cursor = conn.execute(
                f"SELECT {_SYNC_HISTORY_COLUMNS} FROM sync_history{where} "
                "ORDER BY start_time DESC, id DESC LIMIT ? OFFSET ?",
                params + [page_size, (page_num - 1) * page_size]
            )
            items = [_row_to_history(row) for row in cursor.fetchall()]
        finally:
            conn.close()

        return HistoryPage(items=items, page_num=page_num, page_size=page_size, total=total)

    def delete_older_than(self, days: int, now: Optional[datetime] = None) -> int:
        """Delete finished history rows that started more than `days` ago."""
        if days < 0:
            raise ValueError("days cannot be negative")
        cutoff = (now or self.clock()) - timedelta(days=days)
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM sync_history WHERE start_time < ? AND status != ?",
                (_to_db(cutoff), SyncState.RUNNING.value)
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()


class AutoSyncConfigRepository:
    """Reads and writes the single auto-sync configuration row."""

    CONFIG_ID = 1

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get(self) -> AutoSyncConfig:
        """Return the stored config, or defaults if the row is missing."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT enabled, frequency_seconds, sync_type, billing_month,
                       last_sync_time, next_sync_time, max_retries, retry_delay, updated_at
                FROM auto_sync_config WHERE id = ?
            """, (self.CONFIG_ID,)).fetchone()
        finally:
            conn.close()

        if row is None:
            return AutoSyncConfig()

        return AutoSyncConfig(
            enabled=bool(row["enabled"]),
            frequency_seconds=row["frequency_seconds"],
            sync_type=row["sync_type"],
            billing_month=row["billing_month"],
            last_sync_time=_from_db(row["last_sync_time"]),
            next_sync_time=_from_db(row["next_sync_time"]),
            max_retries=row["max_retries"],
            retry_delay=row["retry_delay"],
            updated_at=_from_db(row["updated_at"])
        )

    def save(self, config: AutoSyncConfig) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT OR REPLACE INTO auto_sync_config
                (id, enabled, frequency_seconds, sync_type, billing_month,
                 last_sync_time, next_sync_time, max_retries, retry_delay, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                self.CONFIG_ID,
                int(config.enabled),
                config.frequency_seconds,
                config.sync_type,
                config.billing_month,
                _to_db(config.last_sync_time),
                _to_db(config.next_sync_time),
                config.max_retries,
                config.retry_delay,
                _to_db(datetime.now())
            ))
            conn.commit()
        finally:
            conn.close()


_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS expense_bills (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        billing_no TEXT NOT NULL,
        charge_name TEXT,
        charge_type TEXT,
        model_name TEXT,
        use_group_name TEXT,
        group_name TEXT,
        use_group_id TEXT,
        group_id TEXT,
        order_time TEXT,
        charge_unit_symbol TEXT,
        discount_rate REAL,
        cost_rate REAL,
        cash_cost REAL,
        trial_cash_cost REAL,
        charge_unit REAL,
        charge_count REAL,
        time_window TEXT,
        time_window_start TEXT,
        time_window_end TEXT,
        transaction_time TEXT,
        create_time TEXT,
        api_key TEXT,
        model_code TEXT,
        model_product_name TEXT,
        payment_type TEXT,
        currency TEXT DEFAULT 'CNY',
        billing_status TEXT,
        settlement_amount REAL,
        due_amount REAL,
        paid_amount REAL,
        token_type TEXT,
        token_resource_name TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_history (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        sync_type TEXT NOT NULL,
        start_time TEXT NOT NULL,
        end_time TEXT,
        status TEXT NOT NULL,
        records_synced INTEGER NOT NULL DEFAULT 0,
        total_records INTEGER NOT NULL DEFAULT 0,
        failed_count INTEGER NOT NULL DEFAULT 0,
        total_pages INTEGER NOT NULL DEFAULT 0,
        page_synced INTEGER NOT NULL DEFAULT 0,
        error_message TEXT,
        billing_month TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auto_sync_config (
        id INTEGER PRIMARY KEY,
        enabled INTEGER NOT NULL DEFAULT 0,
        frequency_seconds INTEGER NOT NULL DEFAULT 3600,
        sync_type TEXT NOT NULL DEFAULT 'full',
        billing_month TEXT,
        last_sync_time TEXT,
        next_sync_time TEXT,
        max_retries INTEGER NOT NULL DEFAULT 3,
        retry_delay INTEGER NOT NULL DEFAULT 60,
        updated_at TEXT
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_expense_bills_billing_no ON expense_bills(billing_no)",
    "CREATE INDEX IF NOT EXISTS idx_expense_bills_transaction_time ON expense_bills(transaction_time)",
    "CREATE INDEX IF NOT EXISTS idx_sync_history_status ON sync_history(status)",
    "CREATE INDEX IF NOT EXISTS idx_sync_history_type_start_time ON sync_history(sync_type, start_time)",
    "INSERT OR IGNORE INTO auto_sync_config (id) VALUES (1)",
]


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create tables and indexes if they don't exist.

    Databases created by an older release are migrated by adding any
    expense_bills column that is missing.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        for statement in _SCHEMA[:3]:
            conn.execute(statement)
        existing = {row["name"] for row in conn.execute("PRAGMA table_info(expense_bills)")}
        for column in BILL_COLUMNS:
            if column not in existing:
                column_type = "REAL" if column in _DECIMAL_COLUMNS else "TEXT"
                conn.execute(f"ALTER TABLE expense_bills ADD COLUMN {column} {column_type}")
                logger.info("column_added", table="expense_bills", column=column)
        for statement in _SCHEMA[3:]:
            conn.execute(statement)
        conn.commit()
    finally:
        conn.close()
