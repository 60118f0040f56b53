import sqlite3
import threading
from typing import Any, Iterable, Optional

from guardian.logging_utils import get_logger

logger = get_logger("db")


class DBManager:
    """
    Single point of SQLite access for one database file.
    - one connection per path
    - writes and reads serialized by a lock
    - WAL configured once
    """

    _instances: dict = {}
    _instances_lock = threading.Lock()

    def __new__(cls, db_path: str):
        with cls._instances_lock:
            inst = cls._instances.get(db_path)
            if inst is None:
                inst = super().__new__(cls)
                inst._initialized = False
                cls._instances[db_path] = inst
        return inst

    def __init__(self, db_path: str):
        if self._initialized:
            return

        self.db_path = db_path
        self._lock = threading.RLock()

        self.conn = sqlite3.connect(
            self.db_path,
            check_same_thread=False
        )
        self.conn.row_factory = sqlite3.Row

        self._configure_connection()

        self._initialized = True
        logger.info(f"DBManager initialized for {db_path}")

    def _configure_connection(self) -> None:
        cur = self.conn.cursor()
        cur.execute("PRAGMA foreign_keys = ON;")
        cur.execute("PRAGMA journal_mode = WAL;")
        cur.execute("PRAGMA synchronous = NORMAL;")
        cur.execute("PRAGMA busy_timeout = 5000;")
        cur.close()

    # ----------------------------
    # Public API
    # ----------------------------

    def execute(
        self,
        sql: str,
        params: Iterable[Any] = (),
        *,
        commit: bool = True
    ) -> sqlite3.Cursor:
        """
        Run a write statement (INSERT/UPDATE/DELETE).
        """
        with self._lock:
            cur = self.conn.cursor()
            try:
                cur.execute(sql, params)
                if commit:
                    self.conn.commit()
                return cur
            except Exception:
                self.conn.rollback()
                raise

    def executemany(
        self,
        sql: str,
        seq_of_params: Iterable[Iterable[Any]],
        *,
        commit: bool = True
    ) -> None:
        with self._lock:
            cur = self.conn.cursor()
            try:
                cur.executemany(sql, seq_of_params)
                if commit:
                    self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise
            finally:
                cur.close()

    def transaction(self, statements: Iterable[tuple]) -> None:
        """
        Run several (sql, params) statements atomically.
        """
        with self._lock:
            cur = self.conn.cursor()
            try:
                for sql, params in statements:
                    cur.execute(sql, params)
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise
            finally:
                cur.close()

    def query(
        self,
        sql: str,
        params: Iterable[Any] = ()
    ) -> list[sqlite3.Row]:
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(sql, params)
            rows = cur.fetchall()
            cur.close()
            return rows

    def query_one(
        self,
        sql: str,
        params: Iterable[Any] = ()
    ) -> Optional[sqlite3.Row]:
        rows = self.query(sql, params)
        return rows[0] if rows else None

    def close(self) -> None:
        """
        Close the connection and forget this instance.
        """
        with self._lock:
            self.conn.close()
        with self._instances_lock:
            self._instances.pop(self.db_path, None)
        logger.info(f"DBManager connection closed for {self.db_path}")
