"""
Shared fixtures for the contact reconciliation tests.

Each test gets its own SQLite file under tmp_path; the settings cache is
cleared around every test so the app and helpers point at that file.
"""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from config import get_settings
from contact_store import ContactStore
from db_setup import get_db_connection, init_db


BASE_TIME = datetime(2023, 4, 1, tzinfo=timezone.utc)


def at(minutes: int) -> str:
    return (BASE_TIME + timedelta(minutes=minutes)).isoformat(timespec="microseconds")


@pytest.fixture
def settings(tmp_path, monkeypatch):
    monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "contacts.db"))
    monkeypatch.setenv("LOG_LEVEL", "WARNING")
    get_settings.cache_clear()
    settings = get_settings()
    init_db(settings)
    yield settings
    get_settings.cache_clear()


@pytest.fixture
def conn(settings):
    conn = get_db_connection(settings)
    yield conn
    conn.close()


@pytest.fixture
def store(conn):
    return ContactStore(conn)


@pytest.fixture
def seed(conn):
    """Insert a contact row with explicit timestamps and return its id."""

    def _seed(email=None, phone=None, precedence="primary", linked_id=None,
              created=0, updated=None, deleted=None, contact_id=None):
        cursor = conn.execute(
            """
            INSERT INTO Contact (id, phoneNumber, email, linkedId, linkPrecedence,
                                 createdAt, updatedAt, deletedAt)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                contact_id, phone, email, linked_id, precedence,
                at(created), at(created if updated is None else updated),
                None if deleted is None else at(deleted),
            ),
        )
        return cursor.lastrowid

    return _seed


@pytest.fixture
def check_invariants(conn):
    """Assert the cluster invariants over every live row in the table."""

    def _check():
        rows = [dict(r) for r in conn.execute("SELECT * FROM Contact WHERE deletedAt IS NULL")]
        by_id = {r["id"]: r for r in rows}

        for row in rows:
            assert row["email"] or row["phoneNumber"]
            if row["linkPrecedence"] == "primary":
                assert row["linkedId"] is None
            else:
                owner = by_id.get(row["linkedId"])
                assert owner is not None
                assert owner["linkPrecedence"] == "primary"

        # connect rows sharing an email, a phone or a link, then check each component
        parent = {r["id"]: r["id"] for r in rows}

        def find(i):
            while parent[i] != i:
                parent[i] = parent[parent[i]]
                i = parent[i]
            return i

        first_seen = {}
        for row in rows:
            for key in (("email", row["email"]), ("phone", row["phoneNumber"])):
                if key[1] is None:
                    continue
                if key in first_seen:
                    parent[find(row["id"])] = find(first_seen[key])
                else:
                    first_seen[key] = row["id"]
            if row["linkedId"] in parent:
                parent[find(row["id"])] = find(row["linkedId"])

        clusters = {}
        for row in rows:
            clusters.setdefault(find(row["id"]), []).append(row)

        for members in clusters.values():
            primaries = [r for r in members if r["linkPrecedence"] == "primary"]
            assert len(primaries) == 1
            earliest = min(members, key=lambda r: (r["createdAt"], r["id"]))
            assert primaries[0]["id"] == earliest["id"]
            pairs = [(r["email"], r["phoneNumber"]) for r in members]
            assert len(pairs) == len(set(pairs))

    return _check


@pytest.fixture
def client(settings):
    from main import app

    with TestClient(app) as test_client:
        yield test_client
