"""
Pytest fixtures and test infrastructure for catalog sync tests.
"""
import pytest
import json
import os
import sys

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


@pytest.fixture
def db_path(tmp_path):
    """Path of a fresh SQLite database file for one test."""
    return str(tmp_path / 'catalog.db')


@pytest.fixture
def make_store(db_path):
    """Factory for unconnected SQLite stores sharing the test database.

    A sync closes its store, so tests inspect results through a new one.
    """
    from document_store import SqlDocumentStore

    def factory(collection='products'):
        return SqlDocumentStore(collection, db_path=db_path)

    return factory


@pytest.fixture
def write_json(tmp_path):
    """Write a JSON value (or raw text) to a file and return its path."""
    def writer(data, name='input.json'):
        path = tmp_path / name
        if isinstance(data, str):
            path.write_text(data, encoding='utf-8')
        else:
            path.write_text(json.dumps(data), encoding='utf-8')
        return str(path)

    return writer


@pytest.fixture
def no_mongo_env(monkeypatch):
    """Make open_store() pick SQLite regardless of the developer's .env."""
    monkeypatch.delenv('MONGO_URI', raising=False)
    monkeypatch.delenv('DATABASE_URL', raising=False)


# Helper functions for tests
def seed_documents(store_factory, collection, documents):
    """Insert documents directly, bypassing the sync engine."""
    with store_factory(collection) as store:
        store.insert_many(documents)


def read_documents(store_factory, collection):
    """All documents of a collection, in insertion order."""
    store = store_factory(collection)
    store.connect()
    try:
        cursor = store._conn.cursor()
        cursor.execute(f'SELECT doc FROM {collection} ORDER BY id')
        return [json.loads(row[0]) for row in cursor.fetchall()]
    finally:
        store.close()


def documents_by(store_factory, collection, key):
    """Documents of a collection keyed by one field."""
    return {doc.get(key): doc for doc in read_documents(store_factory, collection)}


def product(sku, title=None, **fields):
    """Minimal scraped product record."""
    record = {'sku': sku, 'title': title or f'Product {sku}', 'price': 1000}
    record.update(fields)
    return record


def slide(desktop, mobile, **fields):
    """Minimal carousel slide record."""
    record = {'desktop': {'url': desktop}, 'mobile': {'url': mobile}}
    record.update(fields)
    return record
