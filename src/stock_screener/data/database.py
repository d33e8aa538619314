"""SQLite data store for snapshots, screens, watchlists, runs and trades."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Iterable

import structlog

from stock_screener.errors import NotFoundError, PersistenceConflictError, PositionStateError
from stock_screener.models.enums import (
    PositionStatus,
    RefreshStatus,
    RefreshType,
    RunStatus,
    ScreenType,
)
from stock_screener.models.records import (
    EarningsRecord,
    FactorBound,
    Position,
    RefreshLog,
    RunAggregates,
    RunRecord,
    ScreenCriteria,
    StockSnapshot,
    Trade,
    WatchlistEntry,
)
from stock_screener.utils.calculations import to_float

logger = structlog.get_logger()

DEFAULT_DB_PATH = Path("data/stock_screener.db")

SNAPSHOT_NUMERIC_FIELDS = [
    "current_price", "previous_close",
    "pe_ratio", "ps_ratio", "pb_ratio", "pcf_ratio",
    "roe", "debt_to_equity", "current_ratio",
    "revenue_growth", "earnings_growth", "dividend_yield",
    "market_cap", "volume",
    "momentum_1m", "momentum_3m", "momentum_6m", "momentum_12m",
]

AGGREGATE_FIELDS = [
    "final_capital", "total_return", "total_return_dollars",
    "total_trades", "winning_trades", "losing_trades", "win_rate",
    "avg_win_amount", "avg_loss_amount", "avg_hold_time_days",
    "max_drawdown", "sharpe_ratio", "profit_factor",
]


def _ts(value: datetime | date | None) -> str | None:
    """Serialize a date/datetime to ISO text for storage."""
    return value.isoformat() if value is not None else None


def _enum_value(value: Any) -> Any:
    return getattr(value, "value", value)


class Database:
    """SQLite store. Each operation opens its own short-lived connection."""

    def __init__(self, db_path: Path | str = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    @contextmanager
    def _get_connection(self):
        """Context manager for database connections."""
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self):
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.executescript("""
                CREATE TABLE IF NOT EXISTS stock_data (
                    symbol TEXT PRIMARY KEY,
                    company_name TEXT,
                    sector TEXT,
                    current_price REAL,
                    previous_close REAL,
                    pe_ratio REAL,
                    ps_ratio REAL,
                    pb_ratio REAL,
                    pcf_ratio REAL,
                    roe REAL,
                    debt_to_equity REAL,
                    current_ratio REAL,
                    revenue_growth REAL,
                    earnings_growth REAL,
                    dividend_yield REAL,
                    market_cap REAL,
                    volume REAL,
                    momentum_1m REAL,
                    momentum_3m REAL,
                    momentum_6m REAL,
                    momentum_12m REAL,
                    data_quality INTEGER DEFAULT 0,
                    data_completeness TEXT DEFAULT 'MINIMAL',
                    has_error BOOLEAN DEFAULT 0,
                    error_message TEXT,
                    last_updated TIMESTAMP
                );

                CREATE INDEX IF NOT EXISTS idx_stock_quality ON stock_data(has_error, data_quality);

                CREATE TABLE IF NOT EXISTS screens (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    description TEXT,
                    screen_type TEXT NOT NULL DEFAULT 'VALUE',
                    is_active BOOLEAN DEFAULT 1,
                    criteria_json TEXT NOT NULL DEFAULT '{}',
                    allocated_capital REAL,
                    current_capital REAL,
                    min_score REAL DEFAULT 0,
                    min_earnings_surprise REAL DEFAULT 5,
                    max_positions INTEGER,
                    max_entries INTEGER,
                    created_at TIMESTAMP,
                    updated_at TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS watchlist_items (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    ticker TEXT NOT NULL,
                    screen_id INTEGER NOT NULL,
                    score REAL NOT NULL,
                    pe_ratio REAL,
                    ps_ratio REAL,
                    momentum REAL,
                    market_cap REAL,
                    current_price REAL,
                    date_added TIMESTAMP NOT NULL,
                    updated_at TIMESTAMP,
                    UNIQUE (ticker, screen_id),
                    FOREIGN KEY (screen_id) REFERENCES screens(id)
                );

                CREATE INDEX IF NOT EXISTS idx_watchlist_score ON watchlist_items(screen_id, score DESC);

                CREATE TABLE IF NOT EXISTS earnings_calendar (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    symbol TEXT NOT NULL,
                    earnings_date DATE NOT NULL,
                    estimated_eps REAL,
                    actual_eps REAL,
                    beat BOOLEAN,
                    surprise REAL,
                    fiscal_quarter TEXT,
                    fiscal_year INTEGER,
                    updated_at TIMESTAMP,
                    UNIQUE (symbol, earnings_date)
                );

                CREATE INDEX IF NOT EXISTS idx_earnings_date ON earnings_calendar(earnings_date);

                CREATE TABLE IF NOT EXISTS runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    description TEXT,
                    notes TEXT,
                    screen_id INTEGER NOT NULL,
                    run_type TEXT NOT NULL,
                    start_date DATE NOT NULL,
                    end_date DATE,
                    starting_capital REAL NOT NULL,
                    current_capital REAL,
                    max_positions INTEGER NOT NULL,
                    trailing_stop_pct REAL NOT NULL,
                    status TEXT NOT NULL DEFAULT 'RUNNING',
                    stop_requested BOOLEAN DEFAULT 0,
                    error_message TEXT,
                    created_at TIMESTAMP,
                    last_update TIMESTAMP,
                    completed_at TIMESTAMP,
                    final_capital REAL,
                    total_return REAL,
                    total_return_dollars REAL,
                    total_trades INTEGER,
                    winning_trades INTEGER,
                    losing_trades INTEGER,
                    win_rate REAL,
                    avg_win_amount REAL,
                    avg_loss_amount REAL,
                    avg_hold_time_days REAL,
                    max_drawdown REAL,
                    sharpe_ratio REAL,
                    profit_factor REAL,
                    FOREIGN KEY (screen_id) REFERENCES screens(id)
                );

                CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(status);

                CREATE TABLE IF NOT EXISTS positions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id INTEGER,
                    screen_id INTEGER,
                    ticker TEXT NOT NULL,
                    quantity INTEGER NOT NULL,
                    entry_price REAL,
                    entry_time TIMESTAMP,
                    current_price REAL,
                    trailing_stop_pct REAL NOT NULL,
                    trailing_stop_price REAL,
                    unrealized_pnl REAL DEFAULT 0,
                    status TEXT NOT NULL,
                    broker_order_id TEXT,
                    exit_price REAL,
                    exit_time TIMESTAMP,
                    last_update TIMESTAMP,
                    FOREIGN KEY (run_id) REFERENCES runs(id)
                );

                CREATE INDEX IF NOT EXISTS idx_positions_run ON positions(run_id, status);

                CREATE TABLE IF NOT EXISTS trades (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id INTEGER,
                    position_id INTEGER UNIQUE,
                    ticker TEXT NOT NULL,
                    quantity INTEGER NOT NULL,
                    entry_price REAL NOT NULL,
                    exit_price REAL NOT NULL,
                    entry_time TIMESTAMP NOT NULL,
                    exit_time TIMESTAMP NOT NULL,
                    realized_pnl REAL NOT NULL,
                    hold_time_minutes INTEGER NOT NULL,
                    exit_reason TEXT NOT NULL,
                    strategy TEXT,
                    FOREIGN KEY (run_id) REFERENCES runs(id),
                    FOREIGN KEY (position_id) REFERENCES positions(id)
                );

                CREATE INDEX IF NOT EXISTS idx_trades_run ON trades(run_id);

                CREATE TABLE IF NOT EXISTS refresh_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    refresh_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    start_time TIMESTAMP NOT NULL,
                    end_time TIMESTAMP,
                    last_update TIMESTAMP,
                    stocks_processed INTEGER DEFAULT 0,
                    stocks_updated INTEGER DEFAULT 0,
                    stocks_skipped INTEGER DEFAULT 0,
                    stocks_failed INTEGER DEFAULT 0,
                    error_message TEXT
                );

                CREATE TABLE IF NOT EXISTS refresh_lock (
                    id INTEGER PRIMARY KEY CHECK (id = 1),
                    status TEXT NOT NULL DEFAULT 'IDLE',
                    log_id INTEGER,
                    acquired_at TIMESTAMP
                );

                INSERT OR IGNORE INTO refresh_lock (id, status) VALUES (1, 'IDLE');
            """)
        logger.debug("Database initialized", path=str(self.db_path))

    # ------------------------------------------------------------------
    # Stock snapshots
    # ------------------------------------------------------------------

    def upsert_stock(self, symbol: str, fields: dict[str, Any]) -> None:
        """Insert or overwrite the snapshot for a symbol with the given fields."""
        values: dict[str, Any] = {"symbol": symbol.upper()}
        for key, value in fields.items():
            if key == "symbol":
                continue
            if key in SNAPSHOT_NUMERIC_FIELDS:
                value = to_float(value)
            elif key in ("last_updated",):
                value = _ts(value)
            elif key == "data_completeness":
                value = _enum_value(value)
            values[key] = value
        values.setdefault("last_updated", _ts(datetime.now()))

        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        updates = ", ".join(f"{k} = excluded.{k}" for k in values if k != "symbol")
        with self._get_connection() as conn:
            conn.execute(
                f"""
                INSERT INTO stock_data ({columns}) VALUES ({placeholders})
                ON CONFLICT(symbol) DO UPDATE SET {updates}
                """,
                list(values.values()),
            )

    def mark_stock_error(self, symbol: str, message: str) -> None:
        """Flag a symbol as failing so it drops out of the screening universe."""
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE stock_data SET has_error = 1, error_message = ?, last_updated = ? WHERE symbol = ?",
                (message, _ts(datetime.now()), symbol.upper()),
            )

    def get_stock(self, symbol: str) -> StockSnapshot | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM stock_data WHERE symbol = ?", (symbol.upper(),)
            ).fetchone()
            return StockSnapshot.from_row(dict(row)) if row else None

    def get_stocks(self, symbols: Iterable[str]) -> dict[str, StockSnapshot]:
        """Snapshots for the given symbols, keyed by symbol."""
        symbols = [s.upper() for s in symbols]
        if not symbols:
            return {}
        placeholders = ", ".join("?" for _ in symbols)
        with self._get_connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM stock_data WHERE symbol IN ({placeholders})", symbols
            ).fetchall()
            return {row["symbol"]: StockSnapshot.from_row(dict(row)) for row in rows}

    def get_screening_universe(self, min_data_quality: int = 0) -> list[StockSnapshot]:
        """All error-free snapshots at or above the data quality floor."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """
                SELECT * FROM stock_data
                WHERE has_error = 0 AND data_quality >= ?
                ORDER BY symbol
                """,
                (min_data_quality,),
            ).fetchall()
            return [StockSnapshot.from_row(dict(row)) for row in rows]

    def list_symbols(self, stale_first: bool = True) -> list[str]:
        """Every known symbol, least recently updated first."""
        order = "last_updated IS NOT NULL, last_updated" if stale_first else "symbol"
        with self._get_connection() as conn:
            rows = conn.execute(f"SELECT symbol FROM stock_data ORDER BY {order}").fetchall()
            return [row["symbol"] for row in rows]

    # ------------------------------------------------------------------
    # Screens
    # ------------------------------------------------------------------

    def save_screen(self, screen: ScreenCriteria) -> int:
        """Insert a new screen or update an existing one. Returns its ID."""
        criteria_json = json.dumps(
            {name: bound.to_dict() for name, bound in screen.factors.items()}
        )
        now = _ts(datetime.now())
        params = (
            screen.name,
            screen.description,
            _enum_value(screen.screen_type),
            int(screen.is_active),
            criteria_json,
            screen.allocated_capital,
            screen.current_capital,
            screen.min_score,
            screen.min_earnings_surprise,
            screen.max_positions,
            screen.max_entries,
        )
        with self._get_connection() as conn:
            if screen.id is None:
                cursor = conn.execute(
                    """
                    INSERT INTO screens
                    (name, description, screen_type, is_active, criteria_json, allocated_capital,
                     current_capital, min_score, min_earnings_surprise, max_positions, max_entries,
                     created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    params + (now, now),
                )
                screen.id = cursor.lastrowid
                logger.info("Created screen", screen_id=screen.id, name=screen.name)
            else:
                cursor = conn.execute(
                    """
                    UPDATE screens SET
                        name = ?, description = ?, screen_type = ?, is_active = ?, criteria_json = ?,
                        allocated_capital = ?, current_capital = ?, min_score = ?,
                        min_earnings_surprise = ?, max_positions = ?, max_entries = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    params + (now, screen.id),
                )
                if cursor.rowcount == 0:
                    raise NotFoundError("Screen", screen.id)
            return screen.id

    def get_screen(self, screen_id: int) -> ScreenCriteria | None:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM screens WHERE id = ?", (screen_id,)).fetchone()
            return self._screen_from_row(dict(row)) if row else None

    def list_screens(self, active_only: bool = False) -> list[ScreenCriteria]:
        query = "SELECT * FROM screens"
        if active_only:
            query += " WHERE is_active = 1"
        with self._get_connection() as conn:
            rows = conn.execute(query + " ORDER BY id").fetchall()
            return [self._screen_from_row(dict(row)) for row in rows]

    def update_screen_capital(self, screen_id: int, current_capital: float) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE screens SET current_capital = ?, updated_at = ? WHERE id = ?",
                (current_capital, _ts(datetime.now()), screen_id),
            )

    @staticmethod
    def _screen_from_row(row: dict[str, Any]) -> ScreenCriteria:
        raw = json.loads(row.get("criteria_json") or "{}")
        factors = {
            name: FactorBound(
                min=spec.get("min"),
                max=spec.get("max"),
                weight=spec.get("weight") or 1.0,
            )
            for name, spec in raw.items()
        }
        return ScreenCriteria(
            id=row["id"],
            name=row["name"],
            factors=factors,
            screen_type=ScreenType(row["screen_type"]),
            description=row.get("description"),
            is_active=bool(row["is_active"]),
            allocated_capital=row.get("allocated_capital"),
            current_capital=row.get("current_capital"),
            min_score=row.get("min_score") or 0.0,
            min_earnings_surprise=(
                row["min_earnings_surprise"] if row.get("min_earnings_surprise") is not None else 5.0
            ),
            max_positions=row.get("max_positions"),
            max_entries=row.get("max_entries"),
        )

    # ------------------------------------------------------------------
    # Watchlist
    # ------------------------------------------------------------------

    def upsert_watchlist_entry(self, entry: WatchlistEntry) -> bool:
        """
        Insert or refresh the entry for (ticker, screen_id).

        Existing rows keep their original date_added.

        Returns:
            True if a new row was inserted, False if an existing row was updated
        """
        now = datetime.now()
        with self._get_connection() as conn:
            existing = conn.execute(
                "SELECT id FROM watchlist_items WHERE ticker = ? AND screen_id = ?",
                (entry.ticker, entry.screen_id),
            ).fetchone()
            conn.execute(
                """
                INSERT INTO watchlist_items
                (ticker, screen_id, score, pe_ratio, ps_ratio, momentum, market_cap,
                 current_price, date_added, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(ticker, screen_id) DO UPDATE SET
                    score = excluded.score,
                    pe_ratio = excluded.pe_ratio,
                    ps_ratio = excluded.ps_ratio,
                    momentum = excluded.momentum,
                    market_cap = excluded.market_cap,
                    current_price = excluded.current_price,
                    updated_at = excluded.updated_at
                """,
                (
                    entry.ticker,
                    entry.screen_id,
                    entry.score,
                    entry.pe_ratio,
                    entry.ps_ratio,
                    entry.momentum,
                    entry.market_cap,
                    entry.current_price,
                    _ts(entry.date_added or now),
                    _ts(now),
                ),
            )
            return existing is None

    def get_watchlist(self, screen_id: int) -> list[WatchlistEntry]:
        """Watchlist entries for a screen, best score first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM watchlist_items WHERE screen_id = ? ORDER BY score DESC, ticker",
                (screen_id,),
            ).fetchall()
            return [WatchlistEntry.from_row(dict(row)) for row in rows]

    def remove_watchlist_entry(self, ticker: str, screen_id: int) -> bool:
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM watchlist_items WHERE ticker = ? AND screen_id = ?",
                (ticker.upper(), screen_id),
            )
            return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Earnings calendar
    # ------------------------------------------------------------------

    def get_earnings(self, symbol: str, earnings_date: date) -> EarningsRecord | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM earnings_calendar WHERE symbol = ? AND earnings_date = ?",
                (symbol.upper(), _ts(earnings_date)),
            ).fetchone()
            return EarningsRecord.from_row(dict(row)) if row else None

    def add_earnings(self, record: EarningsRecord) -> int:
        """Insert a new calendar row. Raises PersistenceConflictError on duplicates."""
        try:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO earnings_calendar
                    (symbol, earnings_date, estimated_eps, actual_eps, beat, surprise,
                     fiscal_quarter, fiscal_year, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.symbol.upper(),
                        _ts(record.earnings_date),
                        record.estimated_eps,
                        record.actual_eps,
                        record.beat,
                        record.surprise,
                        record.fiscal_quarter,
                        record.fiscal_year,
                        _ts(datetime.now()),
                    ),
                )
                return cursor.lastrowid
        except sqlite3.IntegrityError as e:
            raise PersistenceConflictError(
                f"Earnings for {record.symbol} on {record.earnings_date} already exist"
            ) from e

    def record_earnings_actual(self, record: EarningsRecord) -> bool:
        """
        Store the reported EPS and derived beat/surprise.

        Only applies to rows that are not yet reported.

        Returns:
            True if the row was updated
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE earnings_calendar
                SET actual_eps = ?, beat = ?, surprise = ?, updated_at = ?
                WHERE symbol = ? AND earnings_date = ? AND actual_eps IS NULL
                """,
                (
                    record.actual_eps,
                    record.beat,
                    record.surprise,
                    _ts(datetime.now()),
                    record.symbol.upper(),
                    _ts(record.earnings_date),
                ),
            )
            return cursor.rowcount > 0

    def get_earnings_for_symbols(
        self, symbols: Iterable[str], start: date, end: date
    ) -> list[EarningsRecord]:
        """Calendar rows for the symbols with start <= earnings_date <= end."""
        symbols = [s.upper() for s in symbols]
        if not symbols:
            return []
        placeholders = ", ".join("?" for _ in symbols)
        with self._get_connection() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM earnings_calendar
                WHERE symbol IN ({placeholders}) AND earnings_date BETWEEN ? AND ?
                ORDER BY earnings_date, symbol
                """,
                symbols + [_ts(start), _ts(end)],
            ).fetchall()
            return [EarningsRecord.from_row(dict(row)) for row in rows]

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def create_run(self, run: RunRecord) -> RunRecord:
        """Persist a new RUNNING run and return it with its ID."""
        now = datetime.now()
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO runs
                (name, description, notes, screen_id, run_type, start_date, end_date,
                 starting_capital, current_capital, max_positions, trailing_stop_pct,
                 status, created_at, last_update)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run.name,
                    run.description,
                    run.notes,
                    run.screen_id,
                    _enum_value(run.run_type),
                    _ts(run.start_date),
                    _ts(run.end_date),
                    run.starting_capital,
                    run.starting_capital,
                    run.max_positions,
                    run.trailing_stop_pct,
                    RunStatus.RUNNING.value,
                    _ts(now),
                    _ts(now),
                ),
            )
            run.id = cursor.lastrowid
        run.status = RunStatus.RUNNING
        run.current_capital = run.starting_capital
        run.created_at = now
        run.last_update = now
        logger.info("Created run", run_id=run.id, screen_id=run.screen_id, run_type=run.run_type.value)
        return run

    def get_run(self, run_id: int) -> RunRecord | None:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM runs WHERE id = ?", (run_id,)).fetchone()
            return RunRecord.from_row(dict(row)) if row else None

    def list_runs(self, status: RunStatus | None = None) -> list[RunRecord]:
        query = "SELECT * FROM runs"
        params: tuple = ()
        if status is not None:
            query += " WHERE status = ?"
            params = (status.value,)
        with self._get_connection() as conn:
            rows = conn.execute(query + " ORDER BY id DESC", params).fetchall()
            return [RunRecord.from_row(dict(row)) for row in rows]

    def touch_run(self, run_id: int, current_capital: float | None = None) -> None:
        """Heartbeat: record progress on a RUNNING run."""
        with self._get_connection() as conn:
            conn.execute(
                """
                UPDATE runs SET last_update = ?, current_capital = COALESCE(?, current_capital)
                WHERE id = ? AND status = 'RUNNING'
                """,
                (_ts(datetime.now()), current_capital, run_id),
            )

    def request_stop(self, run_id: int) -> bool:
        """Flag a RUNNING run to stop at its next step. Returns False if not RUNNING."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE runs SET stop_requested = 1 WHERE id = ? AND status = 'RUNNING'",
                (run_id,),
            )
            return cursor.rowcount > 0

    def is_stop_requested(self, run_id: int) -> bool:
        with self._get_connection() as conn:
            row = conn.execute("SELECT stop_requested FROM runs WHERE id = ?", (run_id,)).fetchone()
            return bool(row and row["stop_requested"])

    def finalize_run(
        self,
        run_id: int,
        status: RunStatus,
        aggregates: RunAggregates | None = None,
        error_message: str | None = None,
    ) -> None:
        """
        Move a RUNNING run to a terminal status, writing aggregates once.

        Raises:
            PersistenceConflictError: If the run is not RUNNING any more
        """
        if not status.is_terminal:
            raise ValueError(f"Not a terminal status: {status}")

        now = _ts(datetime.now())
        assignments = ["status = ?", "completed_at = ?", "last_update = ?", "error_message = ?"]
        params: list[Any] = [status.value, now, now, error_message]
        if aggregates is not None:
            values = aggregates.to_dict()
            assignments += [f"{name} = ?" for name in AGGREGATE_FIELDS]
            params += [values[name] for name in AGGREGATE_FIELDS]
            assignments.append("current_capital = ?")
            params.append(aggregates.final_capital)

        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE runs SET {', '.join(assignments)} WHERE id = ? AND status = 'RUNNING'",
                params + [run_id],
            )
            if cursor.rowcount == 0:
                raise PersistenceConflictError(f"Run {run_id} is not running")
        logger.info("Finalized run", run_id=run_id, status=status.value)

    def get_stale_runs(self, older_than: timedelta) -> list[RunRecord]:
        """RUNNING runs whose last heartbeat is older than the threshold."""
        cutoff = _ts(datetime.now() - older_than)
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM runs WHERE status = 'RUNNING' AND COALESCE(last_update, created_at) < ?",
                (cutoff,),
            ).fetchall()
            return [RunRecord.from_row(dict(row)) for row in rows]

    # ------------------------------------------------------------------
    # Positions and trades
    # ------------------------------------------------------------------

    def add_position(self, position: Position) -> int:
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO positions
                (run_id, screen_id, ticker, quantity, entry_price, entry_time, current_price,
                 trailing_stop_pct, trailing_stop_price, unrealized_pnl, status,
                 broker_order_id, last_update)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    position.run_id,
                    position.screen_id,
                    position.ticker,
                    position.quantity,
                    position.entry_price,
                    _ts(position.entry_time),
                    position.current_price,
                    position.trailing_stop_pct,
                    position.trailing_stop_price,
                    position.unrealized_pnl,
                    position.status.value,
                    position.broker_order_id,
                    _ts(position.last_update or datetime.now()),
                ),
            )
            position.id = cursor.lastrowid
            return position.id

    def update_position(self, position: Position) -> None:
        """Persist price, stop and P&L of an OPEN position."""
        with self._get_connection() as conn:
            conn.execute(
                """
                UPDATE positions
                SET current_price = ?, trailing_stop_price = ?, unrealized_pnl = ?, last_update = ?
                WHERE id = ? AND status = 'OPEN'
                """,
                (
                    position.current_price,
                    position.trailing_stop_price,
                    position.unrealized_pnl,
                    _ts(position.last_update or datetime.now()),
                    position.id,
                ),
            )

    def close_position(self, position: Position, trade: Trade) -> int:
        """
        Mark a position CLOSED and record its trade in one transaction.

        Returns:
            The new trade ID

        Raises:
            PositionStateError: If the stored position is not OPEN
        """
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                UPDATE positions
                SET status = ?, exit_price = ?, exit_time = ?, current_price = ?,
                    unrealized_pnl = 0, last_update = ?
                WHERE id = ? AND status = 'OPEN'
                """,
                (
                    PositionStatus.CLOSED.value,
                    trade.exit_price,
                    _ts(trade.exit_time),
                    trade.exit_price,
                    _ts(trade.exit_time),
                    position.id,
                ),
            )
            if cursor.rowcount == 0:
                raise PositionStateError(f"Position {position.id} is not open")
            cursor = conn.execute(
                """
                INSERT INTO trades
                (run_id, position_id, ticker, quantity, entry_price, exit_price, entry_time,
                 exit_time, realized_pnl, hold_time_minutes, exit_reason, strategy)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    trade.run_id,
                    position.id,
                    trade.ticker,
                    trade.quantity,
                    trade.entry_price,
                    trade.exit_price,
                    _ts(trade.entry_time),
                    _ts(trade.exit_time),
                    trade.realized_pnl,
                    trade.hold_time_minutes,
                    trade.exit_reason.value,
                    trade.strategy,
                ),
            )
            return cursor.lastrowid

    def get_position(self, position_id: int) -> Position | None:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM positions WHERE id = ?", (position_id,)).fetchone()
            return Position.from_row(dict(row)) if row else None

    def list_positions(
        self,
        status: PositionStatus | None = None,
        run_id: int | None = None,
        live_only: bool = False,
    ) -> list[Position]:
        """
        Query positions.

        Args:
            status: Filter by status
            run_id: Filter by owning run
            live_only: Only positions that belong to no run
        """
        clauses = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if run_id is not None:
            clauses.append("run_id = ?")
            params.append(run_id)
        if live_only:
            clauses.append("run_id IS NULL")
        query = "SELECT * FROM positions"
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        with self._get_connection() as conn:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
            return [Position.from_row(dict(row)) for row in rows]

    def get_trades(self, run_id: int | None = None) -> list[Trade]:
        """Trades for a run (or live trades with no run when run_id is None)."""
        with self._get_connection() as conn:
            if run_id is None:
                rows = conn.execute(
                    "SELECT * FROM trades WHERE run_id IS NULL ORDER BY exit_time, id"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM trades WHERE run_id = ? ORDER BY exit_time, id", (run_id,)
                ).fetchall()
            return [Trade.from_row(dict(row)) for row in rows]

    # ------------------------------------------------------------------
    # Refresh lock and logs
    # ------------------------------------------------------------------

    def acquire_refresh_lock(self, refresh_type: RefreshType) -> int:
        """
        Start a refresh job, claiming the single refresh lock.

        Returns:
            ID of the RUNNING refresh log

        Raises:
            PersistenceConflictError: If another refresh holds the lock
        """
        now = _ts(datetime.now())
        with self._get_connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO refresh_logs (refresh_type, status, start_time, last_update)
                VALUES (?, ?, ?, ?)
                """,
                (refresh_type.value, RefreshStatus.RUNNING.value, now, now),
            )
            log_id = cursor.lastrowid
            cursor = conn.execute(
                """
                UPDATE refresh_lock SET status = 'RUNNING', log_id = ?, acquired_at = ?
                WHERE id = 1 AND status != 'RUNNING'
                """,
                (log_id, now),
            )
            if cursor.rowcount == 0:
                raise PersistenceConflictError("A refresh is already in progress")
        logger.info("Acquired refresh lock", log_id=log_id, refresh_type=refresh_type.value)
        return log_id

    def update_refresh_progress(self, log_id: int, counts: dict[str, int]) -> None:
        with self._get_connection() as conn:
            conn.execute(
                """
                UPDATE refresh_logs SET stocks_processed = ?, stocks_updated = ?,
                    stocks_skipped = ?, stocks_failed = ?, last_update = ?
                WHERE id = ?
                """,
                (
                    counts.get("processed", 0),
                    counts.get("updated", 0),
                    counts.get("skipped", 0),
                    counts.get("failed", 0),
                    _ts(datetime.now()),
                    log_id,
                ),
            )

    def release_refresh_lock(
        self,
        log_id: int,
        status: RefreshStatus,
        error_message: str | None = None,
    ) -> None:
        """Close the refresh log with a terminal status and free the lock."""
        now = _ts(datetime.now())
        with self._get_connection() as conn:
            conn.execute(
                """
                UPDATE refresh_logs SET status = ?, end_time = ?, last_update = ?, error_message = ?
                WHERE id = ? AND status = 'RUNNING'
                """,
                (status.value, now, now, error_message, log_id),
            )
            conn.execute(
                "UPDATE refresh_lock SET status = 'IDLE', log_id = NULL WHERE id = 1 AND log_id = ?",
                (log_id,),
            )
        logger.info("Released refresh lock", log_id=log_id, status=status.value)

    def get_refresh_log(self, log_id: int) -> RefreshLog | None:
        with self._get_connection() as conn:
            row = conn.execute("SELECT * FROM refresh_logs WHERE id = ?", (log_id,)).fetchone()
            return RefreshLog.from_row(dict(row)) if row else None

    def list_refresh_logs(self, limit: int = 20) -> list[RefreshLog]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_logs ORDER BY id DESC LIMIT ?", (limit,)
            ).fetchall()
            return [RefreshLog.from_row(dict(row)) for row in rows]

    def fail_stale_refreshes(self, older_than: timedelta, message: str) -> int:
        """Mark RUNNING refresh logs idle past the threshold FAILED and free the lock."""
        cutoff = _ts(datetime.now() - older_than)
        now = _ts(datetime.now())
        with self._get_connection() as conn:
            stale = [
                row["id"]
                for row in conn.execute(
                    "SELECT id FROM refresh_logs WHERE status = 'RUNNING' AND last_update < ?",
                    (cutoff,),
                ).fetchall()
            ]
            for log_id in stale:
                conn.execute(
                    """
                    UPDATE refresh_logs SET status = 'FAILED', end_time = ?, error_message = ?
                    WHERE id = ?
                    """,
                    (now, message, log_id),
                )
                conn.execute(
                    "UPDATE refresh_lock SET status = 'IDLE', log_id = NULL WHERE id = 1 AND log_id = ?",
                    (log_id,),
                )
            return len(stale)
