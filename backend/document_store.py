"""
Document store backends for catalog sync.

MongoDB (pymongo) is the production target. PostgreSQL (JSONB) and SQLite
keep each collection as a table of JSON documents, so the same sync engine
can run against a relational database or a local file.

Every backend offers the same primitives:
- upsert-by-filter, bulk insert, bulk delete-by-filter
- bulk field update (tombstones)
- minimal projection over the whole collection (identity snapshot)
- counts and index management

Driver exceptions never leave this module; they are re-raised as
StoreError subclasses from sync_errors.
"""

import json
import os
import re
import sqlite3
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

import psycopg2
from dotenv import load_dotenv
from pymongo import ASCENDING, MongoClient, UpdateOne
from pymongo.errors import PyMongoError

from sync_errors import (
    BulkWriteError,
    IndexManagementError,
    StoreConnectionError,
    StoreError,
)


# =============================================================================
# Configuration
# =============================================================================

# Load .env from backend directory
_backend_dir = Path(__file__).resolve().parent
load_dotenv(_backend_dir / ".env")

MONGO_DB_NAME = os.getenv("MONGO_DB_NAME", "abc_electronics")
MONGO_TIMEOUT_MS = int(os.getenv("MONGO_TIMEOUT_MS", "10000"))
SQLITE_PATH = os.getenv("SQLITE_PATH", "catalog.db")

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

Filter = Dict[str, Any]


def get_mongo_uri() -> Optional[str]:
    """Get the MongoDB connection URI from environment."""
    return os.getenv("MONGO_URI")


def get_postgres_url() -> Optional[str]:
    """Get PostgreSQL connection URL from environment."""
    return os.getenv("DATABASE_URL")


# =============================================================================
# Document helpers
# =============================================================================

def get_path(document: Any, path: str) -> Any:
    """Read a dotted path ("desktop.url") from a nested mapping.

    Returns None when any segment is missing or not a mapping.
    """
    value = document
    for part in path.split("."):
        if not isinstance(value, dict) or part not in value:
            return None
        value = value[part]
    return value


def set_path(document: Dict[str, Any], path: str, value: Any) -> None:
    """Write a dotted path, creating intermediate mappings as needed."""
    parts = path.split(".")
    target = document
    for part in parts[:-1]:
        if not isinstance(target.get(part), dict):
            target[part] = {}
        target = target[part]
    target[parts[-1]] = value


# =============================================================================
# Store interface
# =============================================================================

class DocumentStore:
    """
    Interface shared by the storage backends.

    A store is bound to one collection. The caller owns the lifecycle:
    connect() before use, close() on every exit path.
    """

    backend = "abstract"

    def __init__(self, collection: str):
        self.collection_name = collection

    def __enter__(self) -> "DocumentStore":
        self.connect()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def describe(self) -> str:
        return f"{self.backend}:{self.collection_name}"

    def connect(self) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    def find_projections(self, fields: Sequence[str]) -> Iterator[Dict[str, Any]]:
        """Yield {field: value} for every document, reading only `fields`."""
        raise NotImplementedError

    def upsert_many(self, operations: List[Tuple[Filter, Dict[str, Any]]]) -> int:
        """Set the given fields on the first document matching each filter,
        inserting it when nothing matches. Returns operations applied."""
        raise NotImplementedError

    def insert_many(self, documents: List[Dict[str, Any]]) -> int:
        raise NotImplementedError

    def delete_many(self, filters: List[Filter]) -> int:
        """Delete documents matching any filter. Returns documents removed."""
        raise NotImplementedError

    def set_fields_many(self, filters: List[Filter], fields: Dict[str, Any]) -> int:
        """Set `fields` on documents matching any filter. Returns documents modified."""
        raise NotImplementedError

    def count(self, filter: Optional[Filter] = None) -> int:
        raise NotImplementedError

    def drop_indexes(self) -> None:
        raise NotImplementedError

    def create_index(self, fields: Sequence[str], unique: bool = False) -> str:
        raise NotImplementedError


# =============================================================================
# MongoDB
# =============================================================================

class MongoDocumentStore(DocumentStore):
    """Collection in a MongoDB database, accessed through pymongo."""

    backend = "mongodb"

    def __init__(self, collection: str, uri: str, db_name: str = MONGO_DB_NAME,
                 timeout_ms: int = MONGO_TIMEOUT_MS):
        super().__init__(collection)
        self.uri = uri
        self.db_name = db_name
        self.timeout_ms = timeout_ms
        self._client: Optional[MongoClient] = None
        self._collection = None

    def connect(self) -> None:
        try:
            self._client = MongoClient(self.uri, serverSelectionTimeoutMS=self.timeout_ms)
            # MongoClient connects lazily; ping so an unreachable server fails here
            self._client.admin.command("ping")
        except PyMongoError as e:
            self.close()
            raise StoreConnectionError(f"MongoDB connection error: {e}") from e
        self._collection = self._client[self.db_name][self.collection_name]
        print(f"Connected to MongoDB ({self.db_name}.{self.collection_name})", flush=True)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None
            self._collection = None
            print("MongoDB connection closed", flush=True)

    def find_projections(self, fields: Sequence[str]) -> Iterator[Dict[str, Any]]:
        projection = {field: 1 for field in fields}
        projection["_id"] = 0
        try:
            for doc in self._collection.find({}, projection):
                yield {field: get_path(doc, field) for field in fields}
        except PyMongoError as e:
            raise StoreError(f"Error reading {self.collection_name}: {e}") from e

    def upsert_many(self, operations: List[Tuple[Filter, Dict[str, Any]]]) -> int:
        if not operations:
            return 0
        requests = [
            UpdateOne(filter, {"$set": _without_id(doc)}, upsert=True)
            for filter, doc in operations
        ]
        try:
            result = self._collection.bulk_write(requests, ordered=True)
        except PyMongoError as e:
            raise BulkWriteError(f"Bulk upsert failed: {e}", "upsert", len(requests)) from e
        return result.matched_count + result.upserted_count

    def insert_many(self, documents: List[Dict[str, Any]]) -> int:
        if not documents:
            return 0
        try:
            # insert_many adds _id to each document; keep the caller's dicts clean
            result = self._collection.insert_many([dict(doc) for doc in documents], ordered=True)
        except PyMongoError as e:
            raise BulkWriteError(f"Bulk insert failed: {e}", "insert", len(documents)) from e
        return len(result.inserted_ids)

    def delete_many(self, filters: List[Filter]) -> int:
        if not filters:
            return 0
        try:
            result = self._collection.delete_many({"$or": filters})
        except PyMongoError as e:
            raise BulkWriteError(f"Bulk delete failed: {e}", "delete", len(filters)) from e
        return result.deleted_count

    def set_fields_many(self, filters: List[Filter], fields: Dict[str, Any]) -> int:
        if not filters:
            return 0
        try:
            result = self._collection.update_many({"$or": filters}, {"$set": fields})
        except PyMongoError as e:
            raise BulkWriteError(f"Bulk update failed: {e}", "update", len(filters)) from e
        return result.modified_count

    def count(self, filter: Optional[Filter] = None) -> int:
        try:
            return self._collection.count_documents(filter or {})
        except PyMongoError as e:
            raise StoreError(f"Error counting {self.collection_name}: {e}") from e

    def drop_indexes(self) -> None:
        try:
            self._collection.drop_indexes()
        except PyMongoError as e:
            raise IndexManagementError(f"Error dropping indexes: {e}") from e

    def create_index(self, fields: Sequence[str], unique: bool = False) -> str:
        keys = [(field, ASCENDING) for field in fields]
        try:
            return self._collection.create_index(keys, unique=unique)
        except PyMongoError as e:
            raise IndexManagementError(f"Error creating index on {list(fields)}: {e}") from e


def _without_id(doc: Dict[str, Any]) -> Dict[str, Any]:
    # $set on _id fails for existing documents
    return {key: value for key, value in doc.items() if key != "_id"}


# =============================================================================
# PostgreSQL / SQLite
# =============================================================================

class SqlDocumentStore(DocumentStore):
    """
    Collection stored as a table of JSON documents.

    Uses PostgreSQL (JSONB column) when db_url is given, otherwise a SQLite
    file. Dotted paths are resolved with `#>` on PostgreSQL and
    json_extract() on SQLite; indexes are expression indexes on those paths.
    """

    def __init__(self, collection: str, db_url: Optional[str] = None,
                 db_path: Optional[str] = None):
        if not _IDENTIFIER.match(collection):
            raise ValueError(f"Invalid collection name: {collection!r}")
        super().__init__(collection)
        self.db_url = db_url
        self.db_path = db_path or SQLITE_PATH
        self._is_postgres = bool(db_url)
        self.backend = "postgresql" if self._is_postgres else "sqlite"
        self._conn = None

    # -- connection ----------------------------------------------------------

    def connect(self) -> None:
        try:
            if self._is_postgres:
                self._conn = psycopg2.connect(self.db_url)
                ddl = (f"CREATE TABLE IF NOT EXISTS {self.collection_name} "
                       f"(id BIGSERIAL PRIMARY KEY, doc JSONB NOT NULL)")
            else:
                self._conn = sqlite3.connect(self.db_path)
                ddl = (f"CREATE TABLE IF NOT EXISTS {self.collection_name} "
                       f"(id INTEGER PRIMARY KEY AUTOINCREMENT, doc TEXT NOT NULL)")
            cursor = self._conn.cursor()
            cursor.execute(ddl)
            self._conn.commit()
        except (psycopg2.Error, sqlite3.Error) as e:
            self.close()
            raise StoreConnectionError(f"{self.backend} connection error: {e}") from e

        where = "PostgreSQL" if self._is_postgres else f"SQLite: {self.db_path}"
        print(f"Connected to database ({where}, table {self.collection_name})", flush=True)

    def close(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            except (psycopg2.Error, sqlite3.Error):
                pass
            self._conn = None
            print("Database connection closed", flush=True)

    # -- SQL building --------------------------------------------------------

    @property
    def _ph(self) -> str:
        return "%s" if self._is_postgres else "?"

    @property
    def _doc_ph(self) -> str:
        return "%s::jsonb" if self._is_postgres else "?"

    def _path_expr(self, path: str) -> str:
        parts = path.split(".")
        for part in parts:
            if not _IDENTIFIER.match(part):
                raise ValueError(f"Invalid field path: {path!r}")
        if self._is_postgres:
            return "(doc #> '{" + ",".join(parts) + "}')"
        return f"json_extract(doc, '$.{path}')"

    def _where(self, filter: Optional[Filter]) -> Tuple[str, List[Any]]:
        if not filter:
            return "1 = 1", []
        clauses = []
        params: List[Any] = []
        for path, value in filter.items():
            if self._is_postgres:
                clauses.append(f"{self._path_expr(path)} = {self._ph}::jsonb")
                params.append(json.dumps(value))
            else:
                clauses.append(f"{self._path_expr(path)} = {self._ph}")
                params.append(value)
        return " AND ".join(clauses), params

    @staticmethod
    def _load(value: Any) -> Dict[str, Any]:
        # psycopg2 decodes JSONB itself; SQLite hands back text
        return value if isinstance(value, dict) else json.loads(value)

    def _write(self, operation: str, batch_size: int, func) -> int:
        """Run func(cursor) in one transaction, mapping driver errors."""
        cursor = self._conn.cursor()
        try:
            affected = func(cursor)
            self._conn.commit()
            return affected
        except (psycopg2.Error, sqlite3.Error) as e:
            self._conn.rollback()
            raise BulkWriteError(f"Bulk {operation} failed: {e}", operation, batch_size) from e
        finally:
            cursor.close()

    # -- reads ---------------------------------------------------------------

    def find_projections(self, fields: Sequence[str]) -> Iterator[Dict[str, Any]]:
        columns = ", ".join(self._path_expr(field) for field in fields)
        sql = f"SELECT {columns} FROM {self.collection_name} ORDER BY id"
        if self._is_postgres:
            # Server-side cursor keeps the snapshot scan out of client memory
            cursor = self._conn.cursor(name=f"{self.collection_name}_projection")
        else:
            cursor = self._conn.cursor()
        try:
            cursor.execute(sql)
            for row in cursor:
                yield dict(zip(fields, row))
        except (psycopg2.Error, sqlite3.Error) as e:
            raise StoreError(f"Error reading {self.collection_name}: {e}") from e
        finally:
            cursor.close()
            if self._is_postgres:
                self._conn.commit()

    def count(self, filter: Optional[Filter] = None) -> int:
        where, params = self._where(filter)
        cursor = self._conn.cursor()
        try:
            cursor.execute(f"SELECT COUNT(*) FROM {self.collection_name} WHERE {where}", params)
            return cursor.fetchone()[0]
        except (psycopg2.Error, sqlite3.Error) as e:
            raise StoreError(f"Error counting {self.collection_name}: {e}") from e
        finally:
            cursor.close()

    # -- writes --------------------------------------------------------------

    def upsert_many(self, operations: List[Tuple[Filter, Dict[str, Any]]]) -> int:
        if not operations:
            return 0
        table = self.collection_name

        def apply(cursor) -> int:
            for filter, doc in operations:
                where, params = self._where(filter)
                cursor.execute(f"SELECT id, doc FROM {table} WHERE {where} ORDER BY id LIMIT 1", params)
                row = cursor.fetchone()
                if row:
                    merged = self._load(row[1])
                    merged.update(doc)
                    cursor.execute(f"UPDATE {table} SET doc = {self._doc_ph} WHERE id = {self._ph}",
                                   (json.dumps(merged), row[0]))
                else:
                    cursor.execute(f"INSERT INTO {table} (doc) VALUES ({self._doc_ph})",
                                   (json.dumps(doc),))
            return len(operations)

        return self._write("upsert", len(operations), apply)

    def insert_many(self, documents: List[Dict[str, Any]]) -> int:
        if not documents:
            return 0

        def apply(cursor) -> int:
            cursor.executemany(
                f"INSERT INTO {self.collection_name} (doc) VALUES ({self._doc_ph})",
                [(json.dumps(doc),) for doc in documents],
            )
            return len(documents)

        return self._write("insert", len(documents), apply)

    def delete_many(self, filters: List[Filter]) -> int:
        if not filters:
            return 0

        def apply(cursor) -> int:
            removed = 0
            for filter in filters:
                where, params = self._where(filter)
                cursor.execute(f"DELETE FROM {self.collection_name} WHERE {where}", params)
                removed += cursor.rowcount
            return removed

        return self._write("delete", len(filters), apply)

    def set_fields_many(self, filters: List[Filter], fields: Dict[str, Any]) -> int:
        if not filters:
            return 0
        table = self.collection_name

        def apply(cursor) -> int:
            modified = 0
            for filter in filters:
                where, params = self._where(filter)
                cursor.execute(f"SELECT id, doc FROM {table} WHERE {where}", params)
                for row_id, raw in cursor.fetchall():
                    doc = self._load(raw)
                    if all(get_path(doc, path) == value for path, value in fields.items()):
                        continue
                    for path, value in fields.items():
                        set_path(doc, path, value)
                    cursor.execute(f"UPDATE {table} SET doc = {self._doc_ph} WHERE id = {self._ph}",
                                   (json.dumps(doc), row_id))
                    modified += 1
            return modified

        return self._write("update", len(filters), apply)

    # -- indexes -------------------------------------------------------------

    def _index_name(self, fields: Sequence[str]) -> str:
        suffix = "_".join(re.sub(r"\W", "_", field) for field in fields)
        return f"ix_{self.collection_name}_{suffix}"

    def drop_indexes(self) -> None:
        cursor = self._conn.cursor()
        try:
            if self._is_postgres:
                cursor.execute(
                    "SELECT indexname FROM pg_indexes WHERE tablename = %s AND indexname <> %s",
                    (self.collection_name, f"{self.collection_name}_pkey"),
                )
            else:
                # Automatic indexes have no SQL and cannot be dropped
                cursor.execute(
                    "SELECT name FROM sqlite_master WHERE type = 'index' AND tbl_name = ? AND sql IS NOT NULL",
                    (self.collection_name,),
                )
            for (name,) in cursor.fetchall():
                cursor.execute(f'DROP INDEX IF EXISTS "{name}"')
            self._conn.commit()
        except (psycopg2.Error, sqlite3.Error) as e:
            self._conn.rollback()
            raise IndexManagementError(f"Error dropping indexes: {e}") from e
        finally:
            cursor.close()

    def create_index(self, fields: Sequence[str], unique: bool = False) -> str:
        name = self._index_name(fields)
        columns = ", ".join(self._path_expr(field) for field in fields)
        kind = "UNIQUE INDEX" if unique else "INDEX"
        cursor = self._conn.cursor()
        try:
            cursor.execute(f"CREATE {kind} IF NOT EXISTS {name} ON {self.collection_name} ({columns})")
            self._conn.commit()
        except (psycopg2.Error, sqlite3.Error) as e:
            self._conn.rollback()
            raise IndexManagementError(f"Error creating index on {list(fields)}: {e}") from e
        finally:
            cursor.close()
        return name


# =============================================================================
# Factory
# =============================================================================

def open_store(collection: str) -> DocumentStore:
    """
    Build the store for a collection (not yet connected).
    Uses MongoDB if MONGO_URI is set, then PostgreSQL, then SQLite.
    """
    mongo_uri = get_mongo_uri()
    if mongo_uri:
        return MongoDocumentStore(collection, mongo_uri)

    postgres_url = get_postgres_url()
    if postgres_url:
        print("  (MONGO_URI not set, using PostgreSQL)", flush=True)
        return SqlDocumentStore(collection, db_url=postgres_url)

    print(f"  (MONGO_URI and DATABASE_URL not set, using SQLite: {SQLITE_PATH})", flush=True)
    return SqlDocumentStore(collection, db_path=SQLITE_PATH)
