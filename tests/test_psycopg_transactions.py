from contextlib import nullcontext

import pytest

psycopg = pytest.importorskip("psycopg")
from psycopg import errors as pg_errors

from jwkservice.exceptions import DuplicateKey, PersistenceFailure
from jwkservice.helpers import now_utc
from jwkservice.repositories_psycopg import KeyRecord, PsycopgKeyRepository


class FakeCursor:
    """Records statements; raises ``fail_with`` on the next execute when set."""

    def __init__(self, conn):
        self.conn = conn

    def execute(self, sql, params=None):
        if self.conn.fail_with is not None:
            exc, self.conn.fail_with = self.conn.fail_with, None
            raise exc
        self.conn.statements.append(sql)


class FakeConn:
    def __init__(self):
        self.statements = []
        self.fail_with = None

    def transaction(self):
        return nullcontext()

    def cursor(self):
        return nullcontext(FakeCursor(self))


@pytest.fixture()
def repo():
    return PsycopgKeyRepository(conn=FakeConn())


@pytest.fixture()
def record():
    now = now_utc()
    return KeyRecord(
        id="7f1c5a0e-8f62-4c43-9b43-5b0f3c1d2e4a", type="oct", key_data={"kty": "oct", "k": "azE"},
        thumbprint="k1", revoked_at=None, deleted_at=None, created_at=now, updated_at=now,
    )


def test_revoke_outside_transaction_updates_record(repo, record):
    repo.revoke_key(record)
    assert record.revoked_at is not None
    assert any(s.startswith("UPDATE keys SET revoked_at") for s in repo.conn.statements)


def test_record_unchanged_after_rollback(repo, record):
    with pytest.raises(RuntimeError):
        with repo.transaction():
            repo.revoke_key(record)
            assert record.revoked_at is None
            raise RuntimeError("create failed")
    assert record.revoked_at is None
    assert record.state.value == "active"


def test_record_updated_once_outer_transaction_commits(repo, record):
    with repo.transaction():
        with repo.transaction():
            repo.revoke_key(record)
        assert record.revoked_at is None
    assert record.revoked_at is not None


def test_failed_savepoint_drops_only_its_updates(repo, record):
    other = KeyRecord(**{**record.__dict__, "id": "0b6e2c1a-3d4f-4a5b-8c7d-9e0f1a2b3c4d", "thumbprint": "k2"})
    with repo.transaction():
        repo.revoke_key(record)
        with pytest.raises(RuntimeError):
            with repo.transaction():
                repo.revoke_key(other)
                raise RuntimeError("inner failed")
    assert record.revoked_at is not None
    assert other.revoked_at is None


def test_unique_violation_is_duplicate_key(repo):
    repo.conn.fail_with = pg_errors.UniqueViolation("duplicate key value violates unique constraint")
    with pytest.raises(DuplicateKey) as excinfo:
        repo.create_key({"kid": "k1", "kty": "oct", "k": "c2VjcmV0"})
    assert str(excinfo.value) == "Key already exists"


def test_other_database_errors_hide_driver_message(repo):
    repo.conn.fail_with = psycopg.OperationalError("INSERT INTO keys ... c2VjcmV0")
    with pytest.raises(PersistenceFailure) as excinfo:
        repo.create_key({"kid": "k1", "kty": "oct", "k": "c2VjcmV0"})
    assert str(excinfo.value) == "Unable to persist key"
