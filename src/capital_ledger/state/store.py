"""
Persistent state store for capital accounting using SQLite3.
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional

from ..core.errors import StoreUnavailable
from ..core.logging_utils import LoggerMixin


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string (sortable lexicographically)."""
    return datetime.now(timezone.utc).isoformat()


def store_operation(name: str) -> Callable:
    """Wrap a store method so any sqlite3 error surfaces as StoreUnavailable."""

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(self, *args, **kwargs):
            if not self.initialized:
                self.initialize()
            try:
                return func(self, *args, **kwargs)
            except sqlite3.Error as e:
                self.logger.error(f"[DB-ERROR] op={name} error={e}")
                if self.connection is not None and not self._in_transaction:
                    self.connection.rollback()
                raise StoreUnavailable(name, e) from e

        return wrapper

    return decorator


class StateStore(LoggerMixin):
    """
    Persistent store for capital state, positions, trades, run epochs and
    capital locks.

    Every write commits immediately unless it runs inside ``transaction()``,
    in which case the whole block commits or rolls back together.
    """

    def __init__(self, db_path: str = "data/capital_ledger.db"):
        """Initialize the state store.

        Args:
            db_path: Path to SQLite database file
        """
        super().__init__()
        self.db_path = Path(db_path)
        self.connection: Optional[sqlite3.Connection] = None
        self.initialized = False
        self._in_transaction = False

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def initialize(self) -> None:
        """Open the database and create tables if they don't exist."""
        if self.initialized:
            self.logger.debug("StateStore already initialized")
            return

        try:
            self.connection = sqlite3.connect(str(self.db_path), check_same_thread=False)
            self.connection.row_factory = sqlite3.Row
            self._create_tables()
        except sqlite3.Error as e:
            self.logger.error(f"Failed to initialize StateStore: {e}")
            raise StoreUnavailable("initialize", e) from e

        self.initialized = True
        self.logger.info(f"StateStore initialized with database: {self.db_path}")

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        cursor = self.connection.cursor()

        # Single-row global capital record
        cursor.execute("""
            CREATE TABLE IF NOT EXISTS capital_state (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                initial_capital REAL NOT NULL,
                available_balance REAL NOT NULL,
                locked_balance REAL NOT NULL DEFAULT 0.0,
                total_realized_pnl REAL NOT NULL DEFAULT 0.0,
                updated_at TEXT NOT NULL
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS positions (
                trade_id TEXT PRIMARY KEY,
                pool_address TEXT NOT NULL,
                tier TEXT,
                size_usd REAL NOT NULL,
                entry_price REAL NOT NULL DEFAULT 0.0,
                fees_accrued REAL NOT NULL DEFAULT 0.0,
                opened_at TEXT NOT NULL,
                closed_at TEXT,
                exit_reason TEXT,
                pnl_usd REAL,
                run_id TEXT NOT NULL,
                updated_at TEXT
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS trades (
                id TEXT PRIMARY KEY,
                pool_address TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'open'
                    CHECK (status IN ('open', 'closed', 'cancelled')),
                entry_price REAL,
                exit_price REAL,
                entry_asset_value_usd REAL NOT NULL,
                exit_asset_value_usd REAL,
                entry_fees_paid REAL NOT NULL DEFAULT 0.0,
                exit_fees_paid REAL NOT NULL DEFAULT 0.0,
                entry_slippage_usd REAL NOT NULL DEFAULT 0.0,
                exit_slippage_usd REAL NOT NULL DEFAULT 0.0,
                pnl_net REAL,
                exit_reason TEXT,
                run_id TEXT NOT NULL,
                created_at TEXT NOT NULL,
                exit_time TEXT
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS run_epochs (
                run_id TEXT PRIMARY KEY,
                started_at TEXT NOT NULL,
                starting_capital REAL NOT NULL,
                fresh_capital_provided INTEGER NOT NULL DEFAULT 0,
                parent_run_id TEXT,
                status TEXT NOT NULL DEFAULT 'active'
                    CHECK (status IN ('active', 'closed')),
                closed_at TEXT
            )
        """)

        cursor.execute("""
            CREATE TABLE IF NOT EXISTS capital_locks (
                trade_id TEXT PRIMARY KEY,
                amount REAL NOT NULL,
                locked_at TEXT NOT NULL
            )
        """)

        cursor.execute("CREATE INDEX IF NOT EXISTS idx_positions_closed_at ON positions(closed_at)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_positions_run_id ON positions(run_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_trades_status ON trades(status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_trades_run_id ON trades(run_id)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_trades_exit_time ON trades(exit_time)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_run_epochs_status ON run_epochs(status)")
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_run_epochs_started_at ON run_epochs(started_at)")

        self.connection.commit()
        self.logger.debug("Database tables created successfully")

    def _commit(self) -> None:
        if not self._in_transaction:
            self.connection.commit()

    @contextmanager
    def transaction(self) -> Iterator["StateStore"]:
        """Group several writes into one atomic commit.

        Raises:
            StoreUnavailable: If the commit fails (the block is rolled back)
        """
        if not self.initialized:
            self.initialize()
        if self._in_transaction:
            # Nested blocks join the outer transaction
            yield self
            return

        self._in_transaction = True
        try:
            yield self
        except BaseException:
            self._in_transaction = False
            self.connection.rollback()
            raise
        self._in_transaction = False
        try:
            self.connection.commit()
        except sqlite3.Error as e:
            self.connection.rollback()
            self.logger.error(f"[DB-ERROR] op=commit error={e}")
            raise StoreUnavailable("commit", e) from e

    # ------------------------------------------------------------------
    # capital_state
    # ------------------------------------------------------------------

    @store_operation("get_capital_state")
    def get_capital_state(self) -> Optional[Dict[str, Any]]:
        """Get the global capital row, or None if it was never written."""
        cursor = self.connection.cursor()
        cursor.execute("SELECT * FROM capital_state WHERE id = 1")
        row = cursor.fetchone()
        return dict(row) if row else None

    @store_operation("save_capital_state")
    def save_capital_state(
        self,
        initial_capital: float,
        available_balance: float,
        locked_balance: float,
        total_realized_pnl: float,
    ) -> None:
        """Write the single global capital row.

        Args:
            initial_capital: Starting capital of the active run
            available_balance: Capital free for new positions
            locked_balance: Capital reserved by open trades
            total_realized_pnl: Realized PnL settled during the active run
        """
        cursor = self.connection.cursor()
        cursor.execute("""
            INSERT INTO capital_state
            (id, initial_capital, available_balance, locked_balance, total_realized_pnl, updated_at)
            VALUES (1, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                initial_capital = excluded.initial_capital,
                available_balance = excluded.available_balance,
                locked_balance = excluded.locked_balance,
                total_realized_pnl = excluded.total_realized_pnl,
                updated_at = excluded.updated_at
        """, (initial_capital, available_balance, locked_balance, total_realized_pnl, utc_now_iso()))
        self._commit()
        self.logger.debug(
            f"Saved capital state: initial=${initial_capital:.2f} available=${available_balance:.2f} "
            f"locked=${locked_balance:.2f} realized=${total_realized_pnl:.2f}"
        )

    @store_operation("update_realized_pnl")
    def update_realized_pnl(self, total_realized_pnl: float) -> bool:
        """Overwrite only the realized PnL column of the capital row.

        Returns:
            True if the capital row exists and was updated
        """
        cursor = self.connection.cursor()
        cursor.execute(
            "UPDATE capital_state SET total_realized_pnl = ?, updated_at = ? WHERE id = 1",
            (total_realized_pnl, utc_now_iso()),
        )
        self._commit()
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # positions
    # ------------------------------------------------------------------

    @store_operation("insert_position")
    def insert_position(
        self,
        trade_id: str,
        pool_address: str,
        size_usd: float,
        run_id: str,
        tier: Optional[str] = None,
        entry_price: float = 0.0,
        opened_at: Optional[str] = None,
    ) -> None:
        """Insert an open position row."""
        now = utc_now_iso()
        cursor = self.connection.cursor()
        cursor.execute("""
            INSERT INTO positions
            (trade_id, pool_address, tier, size_usd, entry_price, opened_at, run_id, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (trade_id, pool_address, tier, size_usd, entry_price, opened_at or now, run_id, now))
        self._commit()
        self.logger.debug(f"Saved position: {trade_id} pool={pool_address} size=${size_usd:.2f}")

    @store_operation("update_position_size")
    def update_position_size(self, trade_id: str, size_usd: float) -> bool:
        """Resize an open position. Returns False if no open row matched."""
        cursor = self.connection.cursor()
        cursor.execute(
            "UPDATE positions SET size_usd = ?, updated_at = ? WHERE trade_id = ? AND closed_at IS NULL",
            (size_usd, utc_now_iso(), trade_id),
        )
        self._commit()
        return cursor.rowcount > 0

    @store_operation("close_position")
    def close_position(
        self,
        trade_id: str,
        exit_reason: str,
        pnl_usd: float,
        closed_at: Optional[str] = None,
    ) -> bool:
        """Mark an open position closed. Returns False if no open row matched."""
        now = utc_now_iso()
        cursor = self.connection.cursor()
        cursor.execute("""
            UPDATE positions
            SET closed_at = ?, exit_reason = ?, pnl_usd = ?, updated_at = ?
            WHERE trade_id = ? AND closed_at IS NULL
        """, (closed_at or now, exit_reason, pnl_usd, now, trade_id))
        self._commit()
        return cursor.rowcount > 0

    @store_operation("get_open_positions")
    def get_open_positions(self, run_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Get open positions, optionally only those owned by one run."""
        cursor = self.connection.cursor()
        if run_id:
            cursor.execute(
                "SELECT * FROM positions WHERE closed_at IS NULL AND run_id = ? ORDER BY opened_at",
                (run_id,),
            )
        else:
            cursor.execute("SELECT * FROM positions WHERE closed_at IS NULL ORDER BY opened_at")
        return [dict(row) for row in cursor.fetchall()]

    @store_operation("get_position")
    def get_position(self, trade_id: str) -> Optional[Dict[str, Any]]:
        """Get a position row by trade id."""
        cursor = self.connection.cursor()
        cursor.execute("SELECT * FROM positions WHERE trade_id = ?", (trade_id,))
        row = cursor.fetchone()
        return dict(row) if row else None

    # ------------------------------------------------------------------
    # trades
    # ------------------------------------------------------------------

    @store_operation("insert_trade")
    def insert_trade(
        self,
        trade_id: str,
        pool_address: str,
        entry_value_usd: float,
        run_id: str,
        entry_price: Optional[float] = None,
        entry_fees: float = 0.0,
        entry_slippage: float = 0.0,
        created_at: Optional[str] = None,
    ) -> None:
        """Insert an open trade record."""
        cursor = self.connection.cursor()
        cursor.execute("""
            INSERT INTO trades
            (id, pool_address, status, entry_price, entry_asset_value_usd,
             entry_fees_paid, entry_slippage_usd, run_id, created_at)
            VALUES (?, ?, 'open', ?, ?, ?, ?, ?, ?)
        """, (trade_id, pool_address, entry_price, entry_value_usd, entry_fees,
              entry_slippage, run_id, created_at or utc_now_iso()))
        self._commit()
        self.logger.debug(f"Saved trade: {trade_id} pool={pool_address} entry=${entry_value_usd:.2f}")

    @store_operation("close_trade")
    def close_trade(
        self,
        trade_id: str,
        exit_value_usd: float,
        pnl_net: float,
        exit_reason: str,
        exit_fees: float = 0.0,
        exit_slippage: float = 0.0,
        exit_price: Optional[float] = None,
        exit_time: Optional[str] = None,
    ) -> bool:
        """Close an open trade with its exit economics. Returns False if not open."""
        cursor = self.connection.cursor()
        cursor.execute("""
            UPDATE trades
            SET status = 'closed', exit_asset_value_usd = ?, exit_fees_paid = ?,
                exit_slippage_usd = ?, exit_price = ?, pnl_net = ?, exit_reason = ?,
                exit_time = ?
            WHERE id = ? AND status = 'open'
        """, (exit_value_usd, exit_fees, exit_slippage, exit_price, pnl_net, exit_reason,
              exit_time or utc_now_iso(), trade_id))
        self._commit()
        return cursor.rowcount > 0

    @store_operation("get_trade")
    def get_trade(self, trade_id: str) -> Optional[Dict[str, Any]]:
        """Get a trade record by id."""
        cursor = self.connection.cursor()
        cursor.execute("SELECT * FROM trades WHERE id = ?", (trade_id,))
        row = cursor.fetchone()
        return dict(row) if row else None

    @store_operation("get_open_trades")
    def get_open_trades(self) -> List[Dict[str, Any]]:
        """Get every trade still marked open, regardless of run."""
        cursor = self.connection.cursor()
        cursor.execute("SELECT * FROM trades WHERE status = 'open' ORDER BY created_at")
        return [dict(row) for row in cursor.fetchall()]

    @store_operation("get_closed_trades")
    def get_closed_trades(self, run_id: str, since: Optional[str] = None) -> List[Dict[str, Any]]:
        """Get closed trades owned by a run, oldest exit first.

        Args:
            run_id: Owning run (mandatory)
            since: Optional ISO timestamp lower bound on exit_time
        """
        if not run_id:
            raise ValueError("run_id is mandatory for get_closed_trades")

        cursor = self.connection.cursor()
        if since:
            cursor.execute("""
                SELECT * FROM trades
                WHERE status = 'closed' AND run_id = ? AND exit_time >= ?
                ORDER BY exit_time
            """, (run_id, since))
        else:
            cursor.execute(
                "SELECT * FROM trades WHERE status = 'closed' AND run_id = ? ORDER BY exit_time",
                (run_id,),
            )
        return [dict(row) for row in cursor.fetchall()]

    @store_operation("count_closed_trades")
    def count_closed_trades(self, run_id: str) -> int:
        """Count closed trades owned by a run."""
        cursor = self.connection.cursor()
        cursor.execute(
            "SELECT COUNT(*) FROM trades WHERE status = 'closed' AND run_id = ?", (run_id,)
        )
        return int(cursor.fetchone()[0])

    @store_operation("get_closed_trades_outside_run")
    def get_closed_trades_outside_run(self, run_id: str) -> List[Dict[str, Any]]:
        """Get closed trades that belong to any run other than ``run_id``."""
        cursor = self.connection.cursor()
        cursor.execute(
            "SELECT * FROM trades WHERE status = 'closed' AND run_id != ? ORDER BY exit_time",
            (run_id,),
        )
        return [dict(row) for row in cursor.fetchall()]

    # ------------------------------------------------------------------
    # capital_locks
    # ------------------------------------------------------------------

    @store_operation("lock_capital")
    def lock_capital(self, trade_id: str, amount: float) -> None:
        """Reserve capital for a trade (replaces any existing lock)."""
        cursor = self.connection.cursor()
        cursor.execute(
            "INSERT OR REPLACE INTO capital_locks (trade_id, amount, locked_at) VALUES (?, ?, ?)",
            (trade_id, amount, utc_now_iso()),
        )
        self._commit()

    @store_operation("release_lock")
    def release_lock(self, trade_id: str) -> float:
        """Delete a trade's lock.

        Returns:
            The released amount (0.0 when no lock row existed)
        """
        cursor = self.connection.cursor()
        cursor.execute("SELECT amount FROM capital_locks WHERE trade_id = ?", (trade_id,))
        row = cursor.fetchone()
        if row is None:
            return 0.0

        cursor.execute("DELETE FROM capital_locks WHERE trade_id = ?", (trade_id,))
        self._commit()
        return float(row["amount"] or 0.0)

    @store_operation("get_capital_locks")
    def get_capital_locks(self) -> List[Dict[str, Any]]:
        """Get all lock rows."""
        cursor = self.connection.cursor()
        cursor.execute("SELECT * FROM capital_locks ORDER BY locked_at")
        return [dict(row) for row in cursor.fetchall()]

    @store_operation("sum_capital_locks")
    def sum_capital_locks(self) -> float:
        """Total reserved capital across all locks."""
        cursor = self.connection.cursor()
        cursor.execute("SELECT COALESCE(SUM(amount), 0.0) FROM capital_locks")
        return float(cursor.fetchone()[0])

    # ------------------------------------------------------------------
    # run_epochs
    # ------------------------------------------------------------------

    @store_operation("insert_run_epoch")
    def insert_run_epoch(
        self,
        run_id: str,
        started_at: str,
        starting_capital: float,
        fresh_capital_provided: bool,
        parent_run_id: Optional[str] = None,
        status: str = "active",
    ) -> None:
        """Persist a run epoch record."""
        cursor = self.connection.cursor()
        cursor.execute("""
            INSERT INTO run_epochs
            (run_id, started_at, starting_capital, fresh_capital_provided, parent_run_id, status)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (run_id, started_at, starting_capital, int(fresh_capital_provided), parent_run_id, status))
        self._commit()

    @store_operation("close_run_epoch")
    def close_run_epoch(self, run_id: str) -> bool:
        """Mark one epoch closed. Returns False if it was not active."""
        cursor = self.connection.cursor()
        cursor.execute(
            "UPDATE run_epochs SET status = 'closed', closed_at = ? WHERE run_id = ? AND status = 'active'",
            (utc_now_iso(), run_id),
        )
        self._commit()
        return cursor.rowcount > 0

    @store_operation("close_active_epochs")
    def close_active_epochs(self, except_run_id: Optional[str] = None) -> int:
        """Close every active epoch except ``except_run_id``. Returns rows closed."""
        cursor = self.connection.cursor()
        cursor.execute("""
            UPDATE run_epochs SET status = 'closed', closed_at = ?
            WHERE status = 'active' AND run_id != COALESCE(?, '')
        """, (utc_now_iso(), except_run_id))
        self._commit()
        return cursor.rowcount

    @store_operation("get_latest_epoch")
    def get_latest_epoch(self, status: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """Get the most recently started epoch, optionally filtered by status."""
        cursor = self.connection.cursor()
        if status:
            cursor.execute(
                "SELECT * FROM run_epochs WHERE status = ? ORDER BY started_at DESC, run_id DESC LIMIT 1",
                (status,),
            )
        else:
            cursor.execute("SELECT * FROM run_epochs ORDER BY started_at DESC, run_id DESC LIMIT 1")
        row = cursor.fetchone()
        return dict(row) if row else None

    @store_operation("get_run_epoch")
    def get_run_epoch(self, run_id: str) -> Optional[Dict[str, Any]]:
        """Get an epoch by run id."""
        cursor = self.connection.cursor()
        cursor.execute("SELECT * FROM run_epochs WHERE run_id = ?", (run_id,))
        row = cursor.fetchone()
        return dict(row) if row else None

    @store_operation("count_run_epochs_excluding")
    def count_run_epochs_excluding(self, run_id: str) -> int:
        """Count epochs other than ``run_id``."""
        cursor = self.connection.cursor()
        cursor.execute("SELECT COUNT(*) FROM run_epochs WHERE run_id != ?", (run_id,))
        return int(cursor.fetchone()[0])

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        if self.connection:
            self.connection.close()
            self.connection = None
            self.initialized = False
            self.logger.info("StateStore connection closed")

    def __enter__(self):
        """Context manager entry."""
        self.initialize()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
