"""
Storage of backend, binding and secret records.

The gateway only reads through the :class:`Storage` interface; it re-reads
records on every request so edits made by other tools take effect without a
restart. :class:`SQLiteStorage` is the bundled implementation.
"""

import json
import sqlite3
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple, Union

from pydantic import ValidationError

from mcp_toolkit.core.exceptions import StorageError
from mcp_toolkit.core.models import Backend, Binding, EnvVar
from mcp_toolkit.utils.logging import get_logger

logger = get_logger(__name__)


class Storage(ABC):
    """Read side of the record store, as used by the gateway."""

    @abstractmethod
    def list_enabled_backends_with_bindings(self, scope: str) -> List[Tuple[Backend, Binding]]:
        """Enabled bindings in a scope with their backends, in storage order."""

    @abstractmethod
    def list_backends(self) -> List[Backend]:
        """All backend records."""

    @abstractmethod
    def list_bindings(self, scope: str) -> List[Binding]:
        """All bindings in a scope, enabled or not."""

    @abstractmethod
    def get_secret_ciphertext(self, ref: str) -> Optional[str]:
        """Ciphertext token stored under ``ref``, or None."""

    def list_unloadable_backends(self, scope: str) -> Dict[str, str]:
        """
        Enabled backends in a scope whose records could not be loaded.

        Maps the backend name to the reason. These backends are left out of
        :meth:`list_enabled_backends_with_bindings`.
        """
        return {}


class SQLiteStorage(Storage):
    """SQLite-backed record store."""

    def __init__(self, db_path: Union[str, Path]):
        self.db_path = Path(db_path)
        self._ensure_database()

    def _ensure_database(self) -> None:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._connect() as conn:
                self._create_tables(conn)
        except (OSError, sqlite3.Error) as e:
            logger.error(f"Failed to open database {self.db_path}: {e}")
            raise StorageError(f"Failed to open database {self.db_path}: {e}") from e

    def _create_tables(self, conn: sqlite3.Connection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS backends (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                transport TEXT NOT NULL,   -- JSON transport variant
                env TEXT DEFAULT '[]',     -- JSON list of env vars
                description TEXT,
                created_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS bindings (
                id TEXT PRIMARY KEY,
                backend_id TEXT NOT NULL,
                scope TEXT NOT NULL,
                enabled INTEGER NOT NULL DEFAULT 1,
                overrides TEXT DEFAULT '[]',
                created_at TEXT NOT NULL,
                FOREIGN KEY (backend_id) REFERENCES backends(id) ON DELETE CASCADE,
                UNIQUE(backend_id, scope)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS secrets (
                ref TEXT PRIMARY KEY,
                ciphertext TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_bindings_scope ON bindings(scope)")

    def get_connection(self) -> sqlite3.Connection:
        """Get a database connection with proper configuration."""
        conn = sqlite3.connect(self.db_path)
        conn.execute("PRAGMA foreign_keys = ON")
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = self.get_connection()
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _query(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        try:
            with self._connect() as conn:
                return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Database query failed: {e}") from e

    def _execute(self, sql: str, params: tuple) -> None:
        try:
            with self._connect() as conn:
                conn.execute(sql, params)
        except sqlite3.Error as e:
            raise StorageError(f"Database write failed: {e}") from e

    @staticmethod
    def _row_to_backend(row: sqlite3.Row, prefix: str = "") -> Backend:
        try:
            return Backend(
                id=row[f"{prefix}id"],
                name=row[f"{prefix}name"],
                transport=json.loads(row[f"{prefix}transport"]),
                env=json.loads(row[f"{prefix}env"] or "[]"),
                description=row[f"{prefix}description"],
            )
        except (ValidationError, json.JSONDecodeError) as e:
            raise StorageError(
                f"Corrupt backend record '{row[f'{prefix}id']}': {e}",
                error_code="CORRUPT_RECORD",
            ) from e

    @staticmethod
    def _row_to_binding(row: sqlite3.Row, prefix: str = "") -> Binding:
        try:
            return Binding(
                id=row[f"{prefix}id"],
                backend_id=row[f"{prefix}backend_id"],
                scope=row[f"{prefix}scope"],
                enabled=bool(row[f"{prefix}enabled"]),
                overrides=json.loads(row[f"{prefix}overrides"] or "[]"),
            )
        except (ValidationError, json.JSONDecodeError) as e:
            raise StorageError(
                f"Corrupt binding record '{row[f'{prefix}id']}': {e}",
                error_code="CORRUPT_RECORD",
            ) from e

    def _load_enabled(self, scope: str) -> Tuple[List[Tuple[Backend, Binding]], Dict[str, str]]:
        rows = self._query(
            """
            SELECT b.id AS b_id, b.name AS b_name, b.transport AS b_transport,
                   b.env AS b_env, b.description AS b_description,
                   bd.id AS bd_id, bd.backend_id AS bd_backend_id, bd.scope AS bd_scope,
                   bd.enabled AS bd_enabled, bd.overrides AS bd_overrides
            FROM bindings bd
            JOIN backends b ON b.id = bd.backend_id
            WHERE bd.scope = ? AND bd.enabled = 1
            ORDER BY b.rowid
            """,
            (scope,),
        )
        pairs: List[Tuple[Backend, Binding]] = []
        unloadable: Dict[str, str] = {}
        for row in rows:
            try:
                pairs.append((self._row_to_backend(row, "b_"), self._row_to_binding(row, "bd_")))
            except StorageError as e:
                unloadable[row["b_name"]] = e.message
        return pairs, unloadable

    def list_enabled_backends_with_bindings(self, scope: str) -> List[Tuple[Backend, Binding]]:
        pairs, unloadable = self._load_enabled(scope)
        for name, reason in unloadable.items():
            logger.warning(f"Skipping backend {name}: {reason}", extra={"scope": scope, "backend": name})
        return pairs

    def list_unloadable_backends(self, scope: str) -> Dict[str, str]:
        return self._load_enabled(scope)[1]

    def list_backends(self) -> List[Backend]:
        rows = self._query("SELECT * FROM backends ORDER BY rowid")
        return [self._row_to_backend(row) for row in rows]

    def list_bindings(self, scope: str) -> List[Binding]:
        rows = self._query("SELECT * FROM bindings WHERE scope = ? ORDER BY rowid", (scope,))
        return [self._row_to_binding(row) for row in rows]

    def get_secret_ciphertext(self, ref: str) -> Optional[str]:
        rows = self._query("SELECT ciphertext FROM secrets WHERE ref = ?", (ref,))
        return rows[0]["ciphertext"] if rows else None

    def save_backend(self, backend: Backend) -> None:
        """Insert or update a backend record."""
        self._execute(
            """
            INSERT INTO backends (id, name, transport, env, description, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                transport = excluded.transport,
                env = excluded.env,
                description = excluded.description
            """,
            (
                backend.id,
                backend.name,
                backend.transport.model_dump_json(),
                json.dumps([_env_to_dict(var) for var in backend.env]),
                backend.description,
                datetime.now().isoformat(),
            ),
        )
        logger.debug(f"Saved backend {backend.id}", extra={"backend": backend.name})

    def save_binding(self, binding: Binding) -> None:
        """Insert or update a binding record."""
        self._execute(
            """
            INSERT INTO bindings (id, backend_id, scope, enabled, overrides, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                backend_id = excluded.backend_id,
                scope = excluded.scope,
                enabled = excluded.enabled,
                overrides = excluded.overrides
            """,
            (
                binding.id,
                binding.backend_id,
                binding.scope,
                int(binding.enabled),
                json.dumps([_env_to_dict(var) for var in binding.overrides]),
                datetime.now().isoformat(),
            ),
        )
        logger.debug(f"Saved binding {binding.id}", extra={"scope": binding.scope})

    def save_secret(self, ref: str, ciphertext: str) -> None:
        """Store an already encrypted secret token under ``ref``."""
        self._execute(
            """
            INSERT INTO secrets (ref, ciphertext, updated_at) VALUES (?, ?, ?)
            ON CONFLICT(ref) DO UPDATE SET
                ciphertext = excluded.ciphertext,
                updated_at = excluded.updated_at
            """,
            (ref, ciphertext, datetime.now().isoformat()),
        )


def _env_to_dict(var: EnvVar) -> dict:
    return {"key": var.key, "value": var.value, "secret": var.secret}
