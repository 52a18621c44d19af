"""
test_transaction_runner.py — Whole-transaction retry on connection failures.
"""

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from smeta.db import normalize_database_url, run_in_transaction
from smeta.errors import TransientPersistenceError
from smeta.models.orm_models import Tenant
from conftest import run


def _connection_lost():
    return OperationalError("SELECT 1", {}, ConnectionResetError("server closed the connection"))


class FakeSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


class TestRunInTransaction:

    def test_transient_error_retried_with_backoff(self, session_factory):
        sleep = FakeSleep()
        calls = []

        async def work(session):
            calls.append(1)
            if len(calls) < 3:
                raise _connection_lost()
            session.add(Tenant(id="t-retry", name="Повтор"))
            return "ok"

        result = run(run_in_transaction(
            session_factory, work, attempts=3, backoff_seconds=0.1, sleep=sleep,
        ))
        assert result == "ok"
        assert len(calls) == 3
        assert sleep.delays == [0.1, 0.2]

    def test_gives_up_after_last_attempt(self, session_factory):
        sleep = FakeSleep()

        async def work(session):
            raise _connection_lost()

        with pytest.raises(TransientPersistenceError) as exc_info:
            run(run_in_transaction(session_factory, work, attempts=2, backoff_seconds=0.5, sleep=sleep))
        assert exc_info.value.attempts == 2
        assert exc_info.value.code == "PERSISTENCE_UNAVAILABLE"
        assert isinstance(exc_info.value.__cause__, OperationalError)
        assert sleep.delays == [0.5]

    def test_other_errors_propagate_without_retry(self, session_factory, sync_session):
        sleep = FakeSleep()
        calls = []

        async def work(session):
            calls.append(1)
            session.add(Tenant(id="t-fail", name="Откат"))
            await session.flush()
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            run(run_in_transaction(session_factory, work, attempts=3, sleep=sleep))
        assert len(calls) == 1
        assert sleep.delays == []
        assert sync_session.scalar(select(func.count()).select_from(Tenant)) == 0

    def test_commit_on_success(self, session_factory, sync_session):
        async def work(session):
            session.add(Tenant(id="t-ok", name="Готово"))

        run(run_in_transaction(session_factory, work))
        assert sync_session.scalar(select(Tenant.name).where(Tenant.id == "t-ok")) == "Готово"


class TestDatabaseUrl:

    @pytest.mark.parametrize("raw, expected", [
        ("postgresql://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
        ("postgres://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
        ("postgresql+asyncpg://u:p@h/db", "postgresql+asyncpg://u:p@h/db"),
        ("sqlite+aiosqlite:///x.db", "sqlite+aiosqlite:///x.db"),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_database_url(raw) == expected
