import json
import sqlite3
import threading
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from shieldpool.utils.logger import get_logger

logger = get_logger("storage.sqlite")


# Ordered, additive-only schema steps. Index + 1 is the schema version.
MIGRATIONS: List[List[str]] = [
    # 1. Pool state
    [
        """
        CREATE TABLE IF NOT EXISTS chain_state (
            key TEXT PRIMARY KEY,
            value TEXT
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS commitments (
            tree_number INTEGER NOT NULL,
            leaf_index INTEGER NOT NULL,
            commitment BLOB NOT NULL,
            PRIMARY KEY (tree_number, leaf_index)
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS nullifiers (
            tree_number INTEGER NOT NULL,
            nullifier BLOB NOT NULL,
            PRIMARY KEY (tree_number, nullifier)
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS roots (
            tree_number INTEGER NOT NULL,
            root BLOB NOT NULL,
            retired INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (tree_number, root)
        )
        """,
    ],
    # 2. Verifying keys per circuit shape
    [
        """
        CREATE TABLE IF NOT EXISTS verifying_keys (
            n_inputs INTEGER NOT NULL,
            n_outputs INTEGER NOT NULL,
            data TEXT NOT NULL,
            PRIMARY KEY (n_inputs, n_outputs)
        )
        """,
    ],
    # 3. Token blocklist
    [
        """
        CREATE TABLE IF NOT EXISTS blocklist (
            token_id BLOB PRIMARY KEY
        )
        """,
    ],
]

SCHEMA_VERSION = len(MIGRATIONS)


def _field(value: int) -> bytes:
    return value.to_bytes(32, byteorder="big")


def _int(blob: bytes) -> int:
    return int.from_bytes(blob, byteorder="big")


class SQLiteAdapter:
    """
    SQLite backend for persistent pool state.

    Provides:
    1. Accumulator leaves and root history per tree
    2. Nullifier set
    3. Verifying keys, blocklist and pool metadata (fees, schema version)

    Field elements are stored as 32-byte big-endian BLOBs.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._conn_local = threading.local()

        if not self.db_path.parent.exists():
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._migrate()

    def _get_conn(self) -> sqlite3.Connection:
        """Get or create connection for current thread."""
        if not hasattr(self._conn_local, "conn"):
            self._conn_local.conn = sqlite3.connect(
                self.db_path,
                timeout=30.0,
                check_same_thread=False,
            )
            self._conn_local.conn.row_factory = sqlite3.Row
            self._conn_local.conn.execute("PRAGMA journal_mode=WAL;")
            self._conn_local.conn.execute("PRAGMA synchronous=NORMAL;")
        return self._conn_local.conn

    def close(self) -> None:
        if hasattr(self._conn_local, "conn"):
            self._conn_local.conn.close()
            del self._conn_local.conn

    # =========================================================================
    # Schema
    # =========================================================================

    def schema_version(self) -> int:
        conn = self._get_conn()
        table = conn.execute(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name = 'chain_state'"
        ).fetchone()
        if table is None:
            return 0
        value = self.get_chain_meta("schema_version")
        return int(value) if value else 0

    def _migrate(self) -> None:
        """Apply every migration newer than the stored schema version."""
        current = self.schema_version()
        if current > SCHEMA_VERSION:
            raise RuntimeError(
                f"Database schema v{current} is newer than supported v{SCHEMA_VERSION}"
            )

        conn = self._get_conn()
        for version in range(current + 1, SCHEMA_VERSION + 1):
            with conn:
                for statement in MIGRATIONS[version - 1]:
                    conn.execute(statement)
                conn.execute(
                    "INSERT OR REPLACE INTO chain_state (key, value) VALUES ('schema_version', ?)",
                    (str(version),),
                )
            logger.debug(f"Applied schema migration v{version}")

    # =========================================================================
    # Chain State Operations
    # =========================================================================

    def set_chain_meta(self, key: str, value: str):
        conn = self._get_conn()
        with conn:
            conn.execute("INSERT OR REPLACE INTO chain_state (key, value) VALUES (?, ?)", (key, value))

    def get_chain_meta(self, key: str) -> Optional[str]:
        conn = self._get_conn()
        cursor = conn.execute("SELECT value FROM chain_state WHERE key = ?", (key,))
        row = cursor.fetchone()
        return row["value"] if row else None

    # =========================================================================
    # Accumulator Operations
    # =========================================================================

    def get_commitments(self) -> Dict[int, List[int]]:
        """tree_number -> leaves ordered by leaf index."""
        conn = self._get_conn()
        cursor = conn.execute(
            "SELECT tree_number, commitment FROM commitments ORDER BY tree_number, leaf_index"
        )
        trees: Dict[int, List[int]] = {}
        for row in cursor:
            trees.setdefault(row["tree_number"], []).append(_int(row["commitment"]))
        return trees

    def get_commitments_count(self) -> int:
        conn = self._get_conn()
        cursor = conn.execute("SELECT COUNT(*) as cnt FROM commitments")
        return cursor.fetchone()["cnt"]

    def get_roots(self, include_retired: bool = False) -> Dict[int, List[int]]:
        conn = self._get_conn()
        query = "SELECT tree_number, root FROM roots"
        if not include_retired:
            query += " WHERE retired = 0"
        roots: Dict[int, List[int]] = {}
        for row in conn.execute(query):
            roots.setdefault(row["tree_number"], []).append(_int(row["root"]))
        return roots

    def save_root(self, tree_number: int, root: int):
        conn = self._get_conn()
        with conn:
            conn.execute(
                "INSERT OR IGNORE INTO roots (tree_number, root, retired) VALUES (?, ?, 0)",
                (tree_number, _field(root)),
            )

    def retire_root(self, tree_number: int, root: int):
        conn = self._get_conn()
        with conn:
            conn.execute(
                "UPDATE roots SET retired = 1 WHERE tree_number = ? AND root = ?",
                (tree_number, _field(root)),
            )

    # =========================================================================
    # Nullifier Operations
    # =========================================================================

    def is_nullifier_spent(self, tree_number: int, nullifier: int) -> bool:
        conn = self._get_conn()
        cursor = conn.execute(
            "SELECT 1 FROM nullifiers WHERE tree_number = ? AND nullifier = ?",
            (tree_number, _field(nullifier)),
        )
        return cursor.fetchone() is not None

    def get_all_nullifiers(self) -> List[Tuple[int, int]]:
        conn = self._get_conn()
        cursor = conn.execute("SELECT tree_number, nullifier FROM nullifiers")
        return [(row["tree_number"], _int(row["nullifier"])) for row in cursor]

    # =========================================================================
    # Batch Persistence
    # =========================================================================

    def persist_batch(
        self,
        leaves: Sequence[Tuple[int, int, int]],
        nullifiers: Sequence[Tuple[int, int]],
        roots: Sequence[Tuple[int, int]],
        meta: Optional[Dict[str, str]] = None,
    ):
        """
        Atomically write one pool batch.

        Args:
            leaves: (tree_number, leaf_index, commitment)
            nullifiers: (tree_number, nullifier)
            roots: (tree_number, root)
            meta: chain_state entries to upsert
        """
        conn = self._get_conn()
        with conn:
            conn.executemany(
                "INSERT INTO commitments (tree_number, leaf_index, commitment) VALUES (?, ?, ?)",
                [(tree, index, _field(c)) for tree, index, c in leaves],
            )
            conn.executemany(
                "INSERT INTO nullifiers (tree_number, nullifier) VALUES (?, ?)",
                [(tree, _field(n)) for tree, n in nullifiers],
            )
            conn.executemany(
                "INSERT OR IGNORE INTO roots (tree_number, root, retired) VALUES (?, ?, 0)",
                [(tree, _field(r)) for tree, r in roots],
            )
            for key, value in (meta or {}).items():
                conn.execute("INSERT OR REPLACE INTO chain_state (key, value) VALUES (?, ?)", (key, value))

    # =========================================================================
    # Verifying Keys
    # =========================================================================

    def save_verifying_key(self, n_inputs: int, n_outputs: int, data: dict):
        conn = self._get_conn()
        with conn:
            conn.execute(
                "INSERT OR REPLACE INTO verifying_keys (n_inputs, n_outputs, data) VALUES (?, ?, ?)",
                (n_inputs, n_outputs, json.dumps(data)),
            )

    def delete_verifying_key(self, n_inputs: int, n_outputs: int):
        conn = self._get_conn()
        with conn:
            conn.execute(
                "DELETE FROM verifying_keys WHERE n_inputs = ? AND n_outputs = ?",
                (n_inputs, n_outputs),
            )

    def get_verifying_keys(self) -> List[Tuple[int, int, dict]]:
        conn = self._get_conn()
        cursor = conn.execute("SELECT n_inputs, n_outputs, data FROM verifying_keys")
        return [(row["n_inputs"], row["n_outputs"], json.loads(row["data"])) for row in cursor]

    # =========================================================================
    # Blocklist
    # =========================================================================

    def add_blocklisted(self, token_id: int):
        conn = self._get_conn()
        with conn:
            conn.execute("INSERT OR IGNORE INTO blocklist (token_id) VALUES (?)", (_field(token_id),))

    def remove_blocklisted(self, token_id: int):
        conn = self._get_conn()
        with conn:
            conn.execute("DELETE FROM blocklist WHERE token_id = ?", (_field(token_id),))

    def get_blocklist(self) -> List[int]:
        conn = self._get_conn()
        return [_int(row["token_id"]) for row in conn.execute("SELECT token_id FROM blocklist")]
