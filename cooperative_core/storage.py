"""
Record storage for the ledger

Records are JSON documents keyed by id inside named tables. Two backends
share one interface: InMemoryStorage for tests and single-process use,
SQLiteStorage for a persistent book. Amounts are kept as Decimal strings
so nothing is lost to float conversion on the way in or out.

A unit of work is opened with ``atomic()``. Blocks nest as savepoints and
hold the backend's lock until they finish, so a posting and its audit
event become visible to other threads together or not at all. Unique
constraints over document fields back the transaction reference and
posting-period rules.
"""

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from datetime import datetime, timezone, date
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Any, Union, Tuple

Document = Dict[str, Any]


class UniqueConstraintError(Exception):
    """A save would give two records the same values for a unique field set"""

    def __init__(self, table: str, fields: Tuple[str, ...]):
        self.table = table
        self.fields = tuple(fields)
        super().__init__(f"Unique constraint violated on {table}({', '.join(self.fields)})")


def _plain(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


@dataclass
class StorageRecord:
    """Common fields of every persisted ledger record"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Document:
        """Flatten to JSON types; nested values are left to the subclass"""
        return {key: _plain(value) for key, value in asdict(self).items()}


class StorageInterface(ABC):

    @abstractmethod
    def save(self, table: str, record_id: str, data: Document) -> None:
        """Insert or replace a record; raises UniqueConstraintError on a clash"""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Document]:
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Document]:
        """Every record of the table, in insertion order"""

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        pass

    @abstractmethod
    def find(self, table: str, filters: Document) -> List[Document]:
        """Records whose fields equal every filter value, in insertion order"""

    @abstractmethod
    def count(self, table: str) -> int:
        pass

    @abstractmethod
    def ensure_unique(self, table: str, *fields: str) -> None:
        """Declare a unique constraint over one or more record fields.

        Records where every constrained field is None are exempt.
        """

    @abstractmethod
    def close(self) -> None:
        pass

    def begin_transaction(self) -> None:
        pass

    def commit(self) -> None:
        pass

    def rollback(self) -> None:
        pass

    @contextmanager
    def atomic(self):
        """Run the block as one unit of work.

        Nested blocks behave as savepoints: an inner failure undoes only the
        inner block unless the exception keeps propagating.
        """
        self.begin_transaction()
        try:
            yield
        except BaseException:
            self.rollback()
            raise
        else:
            self.commit()


def _matches(record: Document, filters: Document) -> bool:
    return all(key in record and record[key] == value for key, value in filters.items())


def _copy(document):
    return json.loads(json.dumps(document, default=str))


class InMemoryStorage(StorageInterface):
    """Dict-backed storage.

    The re-entrant lock is held for the full extent of an atomic block, so a
    unit of work is isolated from every other thread until it commits. Each
    savepoint is a full copy of every table taken when the block opens, so
    opening a unit costs time proportional to everything stored and a bulk
    run of one unit per account grows quadratically. Use SQLiteStorage for
    books of any real size.
    """

    def __init__(self):
        self._tables: Dict[str, Dict[str, Document]] = {}
        self._unique: Dict[str, List[Tuple[str, ...]]] = {}
        self._lock = threading.RLock()
        self._savepoints: List[Dict[str, Dict[str, Document]]] = []

    def _table(self, table: str) -> Dict[str, Document]:
        return self._tables.setdefault(table, {})

    def _check_unique(self, table: str, record_id: str, data: Document) -> None:
        rows = self._table(table)
        for fields in self._unique.get(table, []):
            key = tuple(data.get(f) for f in fields)
            if all(v is None for v in key):
                continue
            if any(other_id != record_id and tuple(other.get(f) for f in fields) == key
                   for other_id, other in rows.items()):
                raise UniqueConstraintError(table, fields)

    def save(self, table: str, record_id: str, data: Document) -> None:
        with self._lock:
            record = _copy(data)
            self._check_unique(table, record_id, record)
            self._table(table)[record_id] = record

    def load(self, table: str, record_id: str) -> Optional[Document]:
        with self._lock:
            record = self._table(table).get(record_id)
            return _copy(record) if record else None

    def load_all(self, table: str) -> List[Document]:
        with self._lock:
            return [_copy(record) for record in self._table(table).values()]

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def find(self, table: str, filters: Document) -> List[Document]:
        with self._lock:
            return [_copy(record) for record in self._table(table).values() if _matches(record, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def ensure_unique(self, table: str, *fields: str) -> None:
        with self._lock:
            constraints = self._unique.setdefault(table, [])
            if tuple(fields) not in constraints:
                constraints.append(tuple(fields))

    def close(self) -> None:
        pass

    def begin_transaction(self) -> None:
        self._lock.acquire()
        self._savepoints.append(_copy(self._tables))

    def commit(self) -> None:
        try:
            self._savepoints.pop()
        finally:
            self._lock.release()

    def rollback(self) -> None:
        try:
            self._tables = self._savepoints.pop()
        finally:
            self._lock.release()


class SQLiteStorage(StorageInterface):
    """SQLite-backed storage, one table per record type.

    The connection runs in autocommit mode; atomic blocks open an explicit
    ``BEGIN IMMEDIATE`` transaction and nested blocks use savepoints.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._tables: set = set()
        self._unique: Dict[str, List[Tuple[str, ...]]] = {}
        self._depth = 0

        # WAL lets readers in other processes see the last committed state
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")

    def _ensure_table(self, table: str) -> None:
        """Create the table and its created_at index on first use"""
        if table in self._tables:
            return
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._connection.execute(f"""
            CREATE INDEX IF NOT EXISTS idx_{table}_created_at
            ON {table}(created_at)
        """)
        self._tables.add(table)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)

            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)

            # Upsert keeps the rowid, so insertion order survives updates
            try:
                self._connection.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        data = excluded.data,
                        updated_at = excluded.updated_at
                """, (record_id, data_json, now, now))
            except sqlite3.IntegrityError as e:
                raise self._constraint_error(table, str(e)) from e

    def _constraint_error(self, table: str, message: str) -> UniqueConstraintError:
        for fields in self._unique.get(table, []):
            if self._index_name(table, fields) in message or all(f in message for f in fields):
                return UniqueConstraintError(table, fields)
        constraints = self._unique.get(table) or [("id",)]
        return UniqueConstraintError(table, constraints[0])

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY rowid
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Scalar filters go to json_extract; the rest are checked on the decoded rows"""
        with self._lock:
            self._ensure_table(table)
            clauses = []
            params: List[Any] = []
            for key, value in filters.items():
                # Booleans and nulls are compared in Python after the fetch
                if isinstance(value, (str, int, float)) and not isinstance(value, bool):
                    clauses.append(f"json_extract(data, '$.{key}') = ?")
                    params.append(value)
            where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} {where} ORDER BY rowid
            """, params)

            results = []
            for row in cursor.fetchall():
                record = json.loads(row['data'])
                if _matches(record, filters):
                    results.append(record)
            return results

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    @staticmethod
    def _index_name(table: str, fields: Tuple[str, ...]) -> str:
        return f"uq_{table}_{'_'.join(fields)}"

    def ensure_unique(self, table: str, *fields: str) -> None:
        """Create a unique expression index over the JSON fields"""
        with self._lock:
            self._ensure_table(table)
            columns = ", ".join(f"json_extract(data, '$.{f}')" for f in fields)
            self._connection.execute(f"""
                CREATE UNIQUE INDEX IF NOT EXISTS {self._index_name(table, tuple(fields))}
                ON {table}({columns})
            """)
            constraints = self._unique.setdefault(table, [])
            if tuple(fields) not in constraints:
                constraints.append(tuple(fields))

    def begin_transaction(self) -> None:
        """Start a transaction, or a savepoint when already inside one"""
        self._lock.acquire()
        try:
            if self._depth == 0:
                self._connection.execute("BEGIN IMMEDIATE")
            else:
                self._connection.execute(f"SAVEPOINT sp_{self._depth}")
            self._depth += 1
        except Exception:
            self._lock.release()
            raise

    def commit(self) -> None:
        """Commit current transaction or release the innermost savepoint"""
        try:
            self._depth -= 1
            if self._depth == 0:
                self._connection.execute("COMMIT")
            else:
                self._connection.execute(f"RELEASE SAVEPOINT sp_{self._depth}")
        finally:
            self._lock.release()

    def rollback(self) -> None:
        """Rollback current transaction or the innermost savepoint"""
        try:
            self._depth -= 1
            if self._depth == 0:
                self._connection.execute("ROLLBACK")
            else:
                self._connection.execute(f"ROLLBACK TO SAVEPOINT sp_{self._depth}")
                self._connection.execute(f"RELEASE SAVEPOINT sp_{self._depth}")
        finally:
            self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None
