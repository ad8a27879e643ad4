from __future__ import annotations
import json
import logging
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional

import psycopg
from psycopg import errors as pg_errors
from psycopg.rows import dict_row

from jwkservice.exceptions import DuplicateKey, KeyServiceError, NotFound, PersistenceFailure
from jwkservice.helpers import b64url, b64url_decode, is_uuid, now_utc
from jwkservice.models import KeyLifecycle
from jwkservice.repositories import EncryptionKeyRepository, KeyRepository, _wrap_keys

logger = logging.getLogger(__name__)

DDL = """
CREATE TABLE IF NOT EXISTS keys (
    id VARCHAR(36) PRIMARY KEY,
    type VARCHAR(16) NOT NULL,
    key_data TEXT NOT NULL,
    thumbprint VARCHAR(128) NOT NULL UNIQUE,
    revoked_at TIMESTAMPTZ,
    deleted_at TIMESTAMPTZ,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);
CREATE TABLE IF NOT EXISTS tags (
    id VARCHAR(36) PRIMARY KEY,
    key_id VARCHAR(36) NOT NULL REFERENCES keys(id) ON DELETE CASCADE,
    tag_name VARCHAR(255) NOT NULL,
    tag_value VARCHAR(255) NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_tags_key_id ON tags(key_id);
CREATE TABLE IF NOT EXISTS encryption_keys (
    id VARCHAR(36) PRIMARY KEY,
    key VARCHAR(255) NOT NULL,
    hash VARCHAR(128) NOT NULL,
    created_at TIMESTAMPTZ NOT NULL,
    updated_at TIMESTAMPTZ NOT NULL,
    deleted_at TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS ix_encryption_keys_hash ON encryption_keys(hash);
"""


@dataclass
class KeyRecord(KeyLifecycle):
    """Plain key row with the same attributes the ORM model exposes."""
    id: str
    type: str
    key_data: Dict[str, Any]
    thumbprint: str
    revoked_at: Optional[datetime]
    deleted_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime
    tag_map: Dict[str, str] = field(default_factory=dict)


def _encode_key_data(key_data: Mapping[str, Any]) -> str:
    return b64url(json.dumps(dict(key_data)).encode("utf-8"))


class PsycopgRepositoryMixin:
    conn: psycopg.Connection
    _tx_depth = 0

    @staticmethod
    def _error(e: psycopg.Error) -> KeyServiceError:
        # Driver messages may quote row values; only the log gets them
        if isinstance(e, pg_errors.UniqueViolation):
            logger.info("Rejected write: %s", e.diag.message_primary)
            return DuplicateKey("Key already exists")
        logger.exception("Database error")
        return PersistenceFailure("Unable to persist key")

    @contextmanager
    def transaction(self):
        # Nested blocks become savepoints. In-memory record updates queued
        # inside a block are applied once the outermost block commits.
        outer = self._tx_depth == 0
        if outer:
            self._on_commit: List[Callable[[], None]] = []
        mark = len(self._on_commit)
        self._tx_depth += 1
        committed = False
        try:
            with self.conn.transaction():
                yield
            committed = True
        except psycopg.Error as e:
            raise self._error(e) from e
        finally:
            self._tx_depth -= 1
            if not committed:
                del self._on_commit[mark:]
            if outer:
                pending, self._on_commit = self._on_commit, []
                for apply in pending:
                    apply()

    def _after_commit(self, apply: Callable[[], None]) -> None:
        if self._tx_depth:
            self._on_commit.append(apply)
        else:
            apply()

    @contextmanager
    def _cursor(self):
        try:
            with self.conn.transaction(), self.conn.cursor() as cur:
                yield cur
        except psycopg.Error as e:
            raise self._error(e) from e


class PsycopgKeyRepository(PsycopgRepositoryMixin, KeyRepository):
    """
    A pure-psycopg implementation of KeyRepository.
    Rows come back as KeyRecord instances rather than ORM objects.
    """
    def __init__(self, dsn: str = None, conn: psycopg.Connection = None):
        # Autocommit outside explicit transaction() blocks
        self.conn = conn or psycopg.connect(dsn, autocommit=True, row_factory=dict_row)
        with self.conn.cursor() as cur:
            cur.execute(DDL)

    # --- helpers ---
    def _load_tags(self, cur, rows: List[dict]) -> Dict[str, Dict[str, str]]:
        ids = [r["id"] for r in rows]
        tags: Dict[str, Dict[str, str]] = {i: {} for i in ids}
        if ids:
            cur.execute(
                "SELECT key_id, tag_name, tag_value FROM tags WHERE key_id = ANY(%s) ORDER BY created_at;",
                (ids,),
            )
            for t in cur.fetchall():
                tags[t["key_id"]][t["tag_name"]] = t["tag_value"]
        return tags

    def _to_records(self, cur, rows: List[dict]) -> List[KeyRecord]:
        tags = self._load_tags(cur, rows)
        return [
            KeyRecord(
                id=r["id"], type=r["type"], key_data=json.loads(b64url_decode(r["key_data"])),
                thumbprint=r["thumbprint"], revoked_at=r["revoked_at"], deleted_at=r["deleted_at"],
                created_at=r["created_at"], updated_at=r["updated_at"], tag_map=tags[r["id"]],
            )
            for r in rows
        ]

    def _select(
        self,
        *,
        key_id: str = "",
        tags: Optional[Mapping[str, str]] = None,
        include_revoked: bool = False,
        include_trashed: bool = False,
        only_revoked: bool = False,
        only_trashed: bool = False,
    ) -> List[KeyRecord]:
        wheres: List[str] = []
        params: List[Any] = []

        # An "only" filter wins over the matching "include" filter
        if only_revoked:
            wheres.append("k.revoked_at IS NOT NULL")
        elif not include_revoked:
            wheres.append("k.revoked_at IS NULL")
        if only_trashed:
            wheres.append("k.deleted_at IS NOT NULL")
        elif not include_trashed:
            wheres.append("k.deleted_at IS NULL")

        if key_id:
            wheres.append("k.id = %s" if is_uuid(key_id) else "k.thumbprint = %s")
            params.append(key_id)

        for name, value in (tags or {}).items():
            wheres.append(
                "EXISTS (SELECT 1 FROM tags t WHERE t.key_id = k.id AND t.tag_name = %s AND t.tag_value = %s)"
            )
            params.extend([name, str(value)])

        where_sql = " AND ".join(wheres) or "TRUE"
        with self._cursor() as cur:
            cur.execute(f"SELECT k.* FROM keys k WHERE {where_sql} ORDER BY k.created_at ASC;", tuple(params))
            return self._to_records(cur, cur.fetchall())

    def _resolve(self, key, **options) -> KeyRecord:
        return key if isinstance(key, KeyRecord) else self.get_single_key(key, **options)

    # --- interface methods ---
    def get_all(self, *, tags=None, include_revoked=True, include_trashed=False,
                only_revoked=False, only_trashed=False) -> List[KeyRecord]:
        return self._select(
            tags=tags, include_revoked=include_revoked, include_trashed=include_trashed,
            only_revoked=only_revoked, only_trashed=only_trashed,
        )

    def get_single_key(self, key_id, *, include_revoked=False, include_trashed=False) -> KeyRecord:
        rows = self._select(key_id=key_id, include_revoked=include_revoked, include_trashed=include_trashed)
        if not rows:
            raise NotFound(f"Key '{key_id}' not found")
        return rows[0]

    def create_key(self, key_data, tags=None) -> bool:
        now = now_utc()
        key_id = str(uuid.uuid4())
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO keys (id, type, key_data, thumbprint, created_at, updated_at)
                VALUES (%s,%s,%s,%s,%s,%s);
                """,
                (key_id, key_data.get("kty"), _encode_key_data(key_data), key_data.get("kid"), now, now),
            )
            for name, value in (tags or {}).items():
                cur.execute(
                    """
                    INSERT INTO tags (id, key_id, tag_name, tag_value, created_at, updated_at)
                    VALUES (%s,%s,%s,%s,%s,%s);
                    """,
                    (str(uuid.uuid4()), key_id, name, str(value), now, now),
                )
        logger.info("Created %s key %s", key_data.get("kty"), key_data.get("kid"))
        return True

    def _set_column(self, key: KeyRecord, column: str, value) -> None:
        now = now_utc()
        with self._cursor() as cur:
            cur.execute(f"UPDATE keys SET {column} = %s, updated_at = %s WHERE id = %s;", (value, now, key.id))

        def apply():
            setattr(key, column, value)
            key.updated_at = now
        self._after_commit(apply)

    def revoke_key(self, key) -> bool:
        key = self._resolve(key)
        self._set_column(key, "revoked_at", now_utc())
        logger.info("Revoked key %s", key.thumbprint)
        return True

    def unrevoke_key(self, key) -> bool:
        key = self._resolve(key, include_revoked=True)
        self._set_column(key, "revoked_at", None)
        logger.info("Unrevoked key %s", key.thumbprint)
        return True

    def delete_key(self, keys) -> bool:
        keys = [self._resolve(k, include_revoked=True) for k in _wrap_keys(keys)]
        now = now_utc()
        with self.transaction():
            for key in keys:
                self._set_column(key, "deleted_at", now)
        if keys:
            logger.info("Deleted %d key(s)", len(keys))
        return True

    def force_delete_key(self, keys) -> bool:
        keys = [self._resolve(k, include_revoked=True, include_trashed=True) for k in _wrap_keys(keys)]
        if not keys:
            return True
        with self._cursor() as cur:
            cur.execute("DELETE FROM keys WHERE id = ANY(%s);", ([k.id for k in keys],))
        logger.info("Purged %d key(s)", len(keys))
        return True


class PsycopgEncryptionKeyRepository(PsycopgRepositoryMixin, EncryptionKeyRepository):
    def __init__(self, dsn: str = None, conn: psycopg.Connection = None):
        self.conn = conn or psycopg.connect(dsn, autocommit=True, row_factory=dict_row)
        with self.conn.cursor() as cur:
            cur.execute(DDL)

    def _get_row(self, hash: str, include_trashed: bool = False) -> dict:
        sql = "SELECT * FROM encryption_keys WHERE hash = %s"
        if not include_trashed:
            sql += " AND deleted_at IS NULL"
        with self._cursor() as cur:
            cur.execute(sql + " LIMIT 1;", (hash,))
            row = cur.fetchone()
        if row is None:
            raise NotFound("Encryption key not found")
        return row

    def get_encryption_key(self, hash) -> str:
        return self._get_row(hash)["key"]

    def create_encryption_key(self, key, hash) -> bool:
        now = now_utc()
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO encryption_keys (id, key, hash, created_at, updated_at)
                VALUES (%s,%s,%s,%s,%s);
                """,
                (str(uuid.uuid4()), key, hash, now, now),
            )
        return True

    def delete_encryption_key(self, hash) -> bool:
        row = self._get_row(hash)
        now = now_utc()
        with self._cursor() as cur:
            cur.execute(
                "UPDATE encryption_keys SET deleted_at = %s, updated_at = %s WHERE id = %s;",
                (now, now, row["id"]),
            )
        return True

    def force_delete_encryption_key(self, hash) -> bool:
        row = self._get_row(hash, include_trashed=True)
        with self._cursor() as cur:
            cur.execute("DELETE FROM encryption_keys WHERE id = %s;", (row["id"],))
        return True
