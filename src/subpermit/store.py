"""
SQLite state database for allowances, period spend, nonces and balances.

Every public operation runs inside ``LedgerStore.transaction()``. The outermost
scope holds a process-wide lock and a ``BEGIN IMMEDIATE`` transaction, so
operations are serialized across threads and processes. A nested scope opened
from the same thread (e.g. a transfer hook calling back into the token) joins
the open transaction through a SAVEPOINT and sees everything written so far.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional, Union

from .config import DEFAULT_HOME, ensure_private_dir, ensure_private_file


logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = DEFAULT_HOME / "ledger.sqlite3"
MEMORY = ":memory:"

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS allowances (
        owner TEXT NOT NULL,
        spender TEXT NOT NULL,
        interval_seconds TEXT NOT NULL,
        expiry TEXT NOT NULL,
        amount TEXT NOT NULL,
        PRIMARY KEY (owner, spender, interval_seconds, expiry)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS period_spend (
        owner TEXT NOT NULL,
        spender TEXT NOT NULL,
        interval_seconds TEXT NOT NULL,
        expiry TEXT NOT NULL,
        period_index TEXT NOT NULL,
        spent TEXT NOT NULL,
        PRIMARY KEY (owner, spender, interval_seconds, expiry, period_index)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS nonces (
        owner TEXT PRIMARY KEY,
        nonce TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS balances (
        account TEXT PRIMARY KEY,
        amount TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS token_supply (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        total TEXT NOT NULL
    )
    """,
)


class LedgerStore:
    """Serialized, all-or-nothing access to the ledger database."""

    def __init__(self, db_path: Optional[Union[Path, str]] = None):
        if db_path is None:
            db_path = DEFAULT_DB_PATH
        self.db_path = db_path if db_path == MEMORY else Path(db_path)
        if isinstance(self.db_path, Path):
            ensure_private_dir(self.db_path.parent)
            ensure_private_file(self.db_path)
        self._lock = threading.RLock()
        self._depth = 0
        self._after_commit: list[Callable[[], None]] = []
        self._conn = self._connect()
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=30.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._lock:
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA synchronous=FULL")
            for statement in _SCHEMA:
                self._conn.execute(statement)

    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Open (or join) an all-or-nothing transaction.

        An exception rolls back this scope and propagates. Callbacks queued
        with ``after_commit`` run only once the outermost scope commits.
        """
        with self._lock:
            depth = self._depth
            savepoint = f"sp_{depth}"
            queued = len(self._after_commit)
            if depth == 0:
                self._conn.execute("BEGIN IMMEDIATE")
            else:
                self._conn.execute(f"SAVEPOINT {savepoint}")
            self._depth += 1
            try:
                yield self._conn
            except BaseException:
                self._depth -= 1
                if depth == 0:
                    if self._conn.in_transaction:
                        self._conn.execute("ROLLBACK")
                    self._after_commit.clear()
                    logger.debug("Ledger transaction rolled back")
                else:
                    self._conn.execute(f"ROLLBACK TO {savepoint}")
                    self._conn.execute(f"RELEASE {savepoint}")
                    del self._after_commit[queued:]
                raise
            self._depth -= 1
            if depth > 0:
                self._conn.execute(f"RELEASE {savepoint}")
                return
            self._conn.execute("COMMIT")
            callbacks, self._after_commit = self._after_commit, []
            self._run_callbacks(callbacks)

    def _run_callbacks(self, callbacks: list[Callable[[], None]]) -> None:
        # the transaction is already durable; a failing callback cannot undo it
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("After-commit callback failed")

    def after_commit(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` when the enclosing transaction commits."""
        if not self.in_transaction:
            self._run_callbacks([callback])
            return
        self._after_commit.append(callback)

    def close(self) -> None:
        with self._lock:
            self._conn.close()
