import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from nftauction.utils.logger import get_logger

logger = get_logger("storage.sqlite")


# uint256 has at most 78 decimal digits; zero-padding makes TEXT sort numerically
AMOUNT_KEY_WIDTH = 78

AUCTION_UPDATABLE = {
    "status",
    "highest_bid",
    "highest_bidder",
    "settlement_status",
    "settlement_attempted_at",
    "settlement_tx_hash",
    "settlement_error",
}

ATTEMPT_UPDATABLE = {
    "status",
    "tx_ref",
    "completed_at",
    "error",
    "fee_used",
    "block_number",
}


def amount_key(amount: int) -> str:
    return f"{amount:0{AMOUNT_KEY_WIDTH}d}"


class SQLiteAdapter:
    """
    SQLite backend for auction persistence.

    Provides:
    1. Auctions with their denormalized leader and settlement fields.
    2. Bids keyed by bid hash (insert-or-ignore) plus per-bidder nonces.
    3. Settlement attempts (audit trail).

    Every public method is one transaction; single-row operations are
    atomic, and insert_bid also updates the auction projection and the
    bidder nonce in the same transaction.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._conn_local = threading.local()
        self._all_conns: List[sqlite3.Connection] = []
        self._conns_lock = threading.Lock()

        if not self.db_path.parent.exists():
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._init_schema()

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create connection for current thread."""
        if not hasattr(self._conn_local, "conn"):
            conn = sqlite3.connect(
                self.db_path,
                timeout=30.0,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("PRAGMA synchronous=NORMAL;")
            self._conn_local.conn = conn
            with self._conns_lock:
                self._all_conns.append(conn)
        return self._conn_local.conn

    def _init_schema(self):
        """Initialize database schema."""
        conn = self._get_conn()
        with conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS auctions (
                    auction_id TEXT PRIMARY KEY,
                    seller TEXT NOT NULL,
                    nft_contract TEXT NOT NULL,
                    token_id TEXT NOT NULL,
                    start_time INTEGER NOT NULL,
                    end_time INTEGER NOT NULL,
                    starting_price TEXT NOT NULL,
                    min_increment TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'active',
                    chain_auction_id INTEGER,
                    title TEXT NOT NULL DEFAULT '',
                    highest_bid TEXT NOT NULL DEFAULT '0',
                    highest_bidder TEXT,
                    settlement_status TEXT,
                    settlement_attempted_at INTEGER,
                    settlement_tx_hash TEXT,
                    settlement_error TEXT
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_auction_due ON auctions(status, end_time);")

            # seq preserves acceptance order for ledger replay
            conn.execute("""
                CREATE TABLE IF NOT EXISTS bids (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    bid_hash BLOB NOT NULL UNIQUE,
                    auction_id TEXT NOT NULL REFERENCES auctions(auction_id),
                    bidder TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    amount_key TEXT NOT NULL,
                    nonce TEXT NOT NULL,
                    timestamp INTEGER NOT NULL,
                    signature BLOB NOT NULL,
                    signature_valid_until INTEGER NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_bids_rank ON bids(auction_id, amount_key DESC, timestamp ASC);"
            )

            conn.execute("""
                CREATE TABLE IF NOT EXISTS bidder_nonces (
                    bidder TEXT PRIMARY KEY,
                    last_nonce TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS settlement_attempts (
                    attempt_id TEXT PRIMARY KEY,
                    auction_id TEXT NOT NULL REFERENCES auctions(auction_id),
                    winner TEXT,
                    amount TEXT NOT NULL,
                    status TEXT NOT NULL,
                    tx_ref TEXT,
                    attempted_at INTEGER NOT NULL,
                    completed_at INTEGER,
                    error TEXT,
                    seller_proceeds TEXT NOT NULL DEFAULT '0',
                    platform_fee TEXT NOT NULL DEFAULT '0',
                    fee_used TEXT,
                    block_number INTEGER
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_attempts_auction ON settlement_attempts(auction_id);")
            conn.execute("CREATE UNIQUE INDEX IF NOT EXISTS idx_attempts_tx ON settlement_attempts(tx_ref);")

    # =========================================================================
    # Auctions
    # =========================================================================

    def insert_auction(self, row: Dict[str, Any]):
        """Insert a new auction; raises sqlite3.IntegrityError if it exists."""
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        conn = self._get_conn()
        with conn:
            conn.execute(f"INSERT INTO auctions ({columns}) VALUES ({placeholders})", tuple(row.values()))

    def get_auction(self, auction_id: str) -> Optional[sqlite3.Row]:
        conn = self._get_conn()
        cursor = conn.execute("SELECT * FROM auctions WHERE auction_id = ?", (auction_id,))
        return cursor.fetchone()

    def list_auctions(self, status: Optional[str] = None) -> List[sqlite3.Row]:
        conn = self._get_conn()
        if status is None:
            cursor = conn.execute("SELECT * FROM auctions ORDER BY end_time ASC")
        else:
            cursor = conn.execute("SELECT * FROM auctions WHERE status = ? ORDER BY end_time ASC", (status,))
        return cursor.fetchall()

    def update_auction(self, auction_id: str, fields: Dict[str, Any]) -> int:
        """Update whitelisted auction columns; returns affected rows."""
        unknown = set(fields) - AUCTION_UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update auction columns: {sorted(unknown)}")
        assignments = ", ".join(f"{name} = ?" for name in fields)
        conn = self._get_conn()
        with conn:
            cursor = conn.execute(
                f"UPDATE auctions SET {assignments} WHERE auction_id = ?",
                (*fields.values(), auction_id),
            )
        return cursor.rowcount

    def claim_settlement(self, auction_id: str, attempted_at: int) -> int:
        """
        Move settlement_status to processing if it is null or failed.

        Returns 1 when claimed, 0 when another settlement holds it.
        """
        conn = self._get_conn()
        with conn:
            cursor = conn.execute(
                """
                UPDATE auctions
                SET settlement_status = 'processing', settlement_attempted_at = ?, settlement_error = NULL
                WHERE auction_id = ?
                  AND (settlement_status IS NULL OR settlement_status = 'failed')
                """,
                (attempted_at, auction_id),
            )
        return cursor.rowcount

    def find_due_auctions(self, now: int, limit: int) -> List[sqlite3.Row]:
        """Expired active auctions whose settlement is not started or failed."""
        conn = self._get_conn()
        cursor = conn.execute(
            """
            SELECT * FROM auctions
            WHERE end_time < ? AND status = 'active'
              AND (settlement_status IS NULL OR settlement_status = 'failed')
            ORDER BY end_time ASC
            LIMIT ?
            """,
            (now, limit),
        )
        return cursor.fetchall()

    def reset_stuck(self, cutoff: int) -> List[str]:
        """Reset settlements processing since before cutoff; returns their ids."""
        conn = self._get_conn()
        with conn:
            rows = conn.execute(
                """
                SELECT auction_id FROM auctions
                WHERE settlement_status = 'processing' AND settlement_attempted_at < ?
                """,
                (cutoff,),
            ).fetchall()
            conn.execute(
                """
                UPDATE auctions
                SET settlement_status = NULL, settlement_attempted_at = NULL
                WHERE settlement_status = 'processing' AND settlement_attempted_at < ?
                """,
                (cutoff,),
            )
        return [row["auction_id"] for row in rows]

    def purge_errors(self, cutoff: int) -> int:
        conn = self._get_conn()
        with conn:
            cursor = conn.execute(
                """
                UPDATE auctions SET settlement_error = NULL
                WHERE settlement_status = 'failed' AND settlement_attempted_at < ?
                  AND settlement_error IS NOT NULL
                """,
                (cutoff,),
            )
        return cursor.rowcount

    # =========================================================================
    # Bids
    # =========================================================================

    def insert_bid(
        self,
        bid_hash: bytes,
        auction_id: str,
        bidder: str,
        amount: int,
        nonce: int,
        timestamp: int,
        signature: bytes,
    ) -> Optional[bool]:
        """
        Atomically record a bid.

        Returns:
            True if inserted, False if the bid hash already exists,
            None if the auction does not exist.
        """
        conn = self._get_conn()
        with conn:
            auction = conn.execute(
                "SELECT end_time FROM auctions WHERE auction_id = ?", (auction_id,)
            ).fetchone()
            if auction is None:
                return None

            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO bids
                (bid_hash, auction_id, bidder, amount, amount_key, nonce, timestamp,
                 signature, signature_valid_until)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (bid_hash, auction_id, bidder, str(amount), amount_key(amount), str(nonce),
                 timestamp, signature, auction["end_time"]),
            )
            if cursor.rowcount == 0:
                return False

            # Auction projection: max amount, earliest timestamp, first accepted
            leader = conn.execute(
                """
                SELECT bidder, amount FROM bids WHERE auction_id = ?
                ORDER BY amount_key DESC, timestamp ASC, seq ASC LIMIT 1
                """,
                (auction_id,),
            ).fetchone()
            conn.execute(
                "UPDATE auctions SET highest_bid = ?, highest_bidder = ? WHERE auction_id = ?",
                (leader["amount"], leader["bidder"], auction_id),
            )

            current = conn.execute(
                "SELECT last_nonce FROM bidder_nonces WHERE bidder = ?", (bidder,)
            ).fetchone()
            if current is None:
                conn.execute(
                    "INSERT INTO bidder_nonces (bidder, last_nonce) VALUES (?, ?)", (bidder, str(nonce))
                )
            elif int(current["last_nonce"]) < nonce:
                conn.execute(
                    "UPDATE bidder_nonces SET last_nonce = ? WHERE bidder = ?", (str(nonce), bidder)
                )
        return True

    def get_bids_ranked(self, auction_id: str) -> List[sqlite3.Row]:
        """Bids ordered by amount desc, timestamp asc."""
        conn = self._get_conn()
        cursor = conn.execute(
            """
            SELECT * FROM bids WHERE auction_id = ?
            ORDER BY amount_key DESC, timestamp ASC, seq ASC
            """,
            (auction_id,),
        )
        return cursor.fetchall()

    def get_bids_in_order(self, auction_id: str) -> List[sqlite3.Row]:
        """Bids in acceptance order."""
        conn = self._get_conn()
        cursor = conn.execute("SELECT * FROM bids WHERE auction_id = ? ORDER BY seq ASC", (auction_id,))
        return cursor.fetchall()

    def get_winning_bid(self, auction_id: str) -> Optional[sqlite3.Row]:
        conn = self._get_conn()
        cursor = conn.execute(
            """
            SELECT * FROM bids WHERE auction_id = ?
            ORDER BY amount_key DESC, timestamp ASC, seq ASC LIMIT 1
            """,
            (auction_id,),
        )
        return cursor.fetchone()

    def has_bid(self, bid_hash: bytes) -> bool:
        conn = self._get_conn()
        cursor = conn.execute("SELECT 1 FROM bids WHERE bid_hash = ?", (bid_hash,))
        return cursor.fetchone() is not None

    def get_bidder_nonce(self, bidder: str) -> int:
        conn = self._get_conn()
        row = conn.execute("SELECT last_nonce FROM bidder_nonces WHERE bidder = ?", (bidder,)).fetchone()
        return int(row["last_nonce"]) if row else 0

    # =========================================================================
    # Settlement Attempts
    # =========================================================================

    def insert_attempt(self, row: Dict[str, Any]):
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        conn = self._get_conn()
        with conn:
            conn.execute(
                f"INSERT INTO settlement_attempts ({columns}) VALUES ({placeholders})", tuple(row.values())
            )

    def update_attempt(self, attempt_id: str, fields: Dict[str, Any]) -> int:
        unknown = set(fields) - ATTEMPT_UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update attempt columns: {sorted(unknown)}")
        assignments = ", ".join(f"{name} = ?" for name in fields)
        conn = self._get_conn()
        with conn:
            cursor = conn.execute(
                f"UPDATE settlement_attempts SET {assignments} WHERE attempt_id = ?",
                (*fields.values(), attempt_id),
            )
        return cursor.rowcount

    def get_attempts(self, auction_id: str) -> List[sqlite3.Row]:
        conn = self._get_conn()
        cursor = conn.execute(
            "SELECT * FROM settlement_attempts WHERE auction_id = ? ORDER BY attempted_at ASC, rowid ASC",
            (auction_id,),
        )
        return cursor.fetchall()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def close(self):
        """Close every connection opened by this adapter."""
        with self._conns_lock:
            for conn in self._all_conns:
                conn.close()
            self._all_conns.clear()
        self._conn_local = threading.local()
