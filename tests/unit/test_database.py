"""Unit tests for SQLite database setup (in-memory)."""

import threading

from sqlalchemy import inspect

from backend.core.database import SELLER_ROLES, User, get_engine, get_session, get_user, init_db


class TestInitDb:

    def test_creates_catalog_and_chat_tables(self, db):
        tables = set(inspect(get_engine()).get_table_names())
        assert {"users", "products", "orders", "bookings", "chat_sessions", "chat_messages", "email_jobs"} <= tables

    def test_reinit_gives_empty_database(self, catalog):
        init_db("sqlite:///:memory:")
        assert get_user("U1") is None

    def test_memory_database_shared_across_threads(self, db):
        with get_session() as s:
            s.add(User(id="T1", email="t@example.com", role="user"))
            s.commit()

        found = []
        worker = threading.Thread(target=lambda: found.append(get_user("T1")))
        worker.start()
        worker.join()

        assert found[0] is not None


class TestGetUser:

    def test_known_user(self, catalog):
        user = get_user("D1")
        assert user.role == "distributor"
        assert user.role in SELLER_ROLES

    def test_unknown_user(self, catalog):
        assert get_user("nobody") is None
