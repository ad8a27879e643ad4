from __future__ import annotations
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Iterator, List, Mapping, Optional

from sqlalchemy import and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from jwkservice.exceptions import DuplicateKey, KeyServiceError, NotFound, PersistenceFailure
from jwkservice.extensions import db
from jwkservice.helpers import is_uuid, now_utc
from jwkservice.models import EncryptionKey, Key, Tag

logger = logging.getLogger(__name__)


def _persistence_error(e: SQLAlchemyError) -> KeyServiceError:
    # Driver messages carry the SQL text; only the log gets them
    if isinstance(e, IntegrityError):
        logger.info("Rejected write: %s", e.orig)
        return DuplicateKey("Key already exists")
    logger.exception("Database error")
    return PersistenceFailure("Unable to persist key")


def _wrap_keys(keys) -> list:
    if keys is None:
        return []
    if isinstance(keys, (list, tuple, set)):
        return list(keys)
    return [keys]


# ---------- Repository interfaces ----------
class KeyRepository(ABC):
    @abstractmethod
    def get_all(
        self,
        *,
        tags: Optional[Mapping[str, str]] = None,
        include_revoked: bool = True,
        include_trashed: bool = False,
        only_revoked: bool = False,
        only_trashed: bool = False,
    ) -> list: ...
    @abstractmethod
    def get_single_key(
        self,
        key_id: str,
        *,
        include_revoked: bool = False,
        include_trashed: bool = False,
    ):
        """Look a key up by UUID or thumbprint; raises NotFound."""
    @abstractmethod
    def create_key(self, key_data: Mapping[str, Any], tags: Optional[Mapping[str, str]] = None) -> bool: ...
    @abstractmethod
    def revoke_key(self, key) -> bool: ...
    @abstractmethod
    def unrevoke_key(self, key) -> bool: ...
    @abstractmethod
    def delete_key(self, keys) -> bool: ...
    @abstractmethod
    def force_delete_key(self, keys) -> bool: ...
    @abstractmethod
    def transaction(self):
        """Context manager: everything inside commits together or not at all."""


class EncryptionKeyRepository(ABC):
    @abstractmethod
    def get_encryption_key(self, hash: str) -> str: ...
    @abstractmethod
    def create_encryption_key(self, key: str, hash: str) -> bool: ...
    @abstractmethod
    def delete_encryption_key(self, hash: str) -> bool: ...
    @abstractmethod
    def force_delete_encryption_key(self, hash: str) -> bool: ...


# ---------- SQLAlchemy implementation ----------
class SQLAlchemyRepositoryMixin:
    """Commit handling shared by the SQLAlchemy repositories.

    Writes commit immediately unless a ``transaction()`` block is open on the
    current session, in which case they are only flushed.
    """

    @staticmethod
    def _depth() -> int:
        return db.session.info.get("jwk_tx_depth", 0)

    @contextmanager
    def transaction(self) -> Iterator[None]:
        info = db.session.info
        outer = self._depth() == 0
        info["jwk_tx_depth"] = self._depth() + 1
        try:
            yield
            if outer:
                db.session.commit()
        except SQLAlchemyError as e:
            if outer:
                db.session.rollback()
            raise _persistence_error(e) from e
        except Exception:
            if outer:
                db.session.rollback()
            raise
        finally:
            info["jwk_tx_depth"] = info.get("jwk_tx_depth", 1) - 1

    def _commit(self) -> None:
        try:
            if self._depth():
                db.session.flush()
            else:
                db.session.commit()
        except SQLAlchemyError as e:
            if not self._depth():
                db.session.rollback()
            raise _persistence_error(e) from e


class SQLAlchemyKeyRepository(SQLAlchemyRepositoryMixin, KeyRepository):
    def _query(
        self,
        *,
        key_id: str = "",
        tags: Optional[Mapping[str, str]] = None,
        include_revoked: bool = False,
        include_trashed: bool = False,
        only_revoked: bool = False,
        only_trashed: bool = False,
    ):
        q = Key.query

        # An "only" filter wins over the matching "include" filter
        if only_revoked:
            q = q.filter(Key.revoked_at.isnot(None))
        elif not include_revoked:
            q = q.filter(Key.revoked_at.is_(None))

        if only_trashed:
            q = q.filter(Key.deleted_at.isnot(None))
        elif not include_trashed:
            q = q.filter(Key.deleted_at.is_(None))

        if key_id:
            q = q.filter(Key.id == key_id) if is_uuid(key_id) else q.filter(Key.thumbprint == key_id)

        for name, value in (tags or {}).items():
            q = q.filter(Key.tags.any(and_(Tag.tag_name == name, Tag.tag_value == str(value))))

        return q.order_by(Key.created_at.asc())

    def get_all(self, *, tags=None, include_revoked=True, include_trashed=False,
                only_revoked=False, only_trashed=False) -> List[Key]:
        return self._query(
            tags=tags, include_revoked=include_revoked, include_trashed=include_trashed,
            only_revoked=only_revoked, only_trashed=only_trashed,
        ).all()

    def get_single_key(self, key_id, *, include_revoked=False, include_trashed=False) -> Key:
        key = self._query(key_id=key_id, include_revoked=include_revoked, include_trashed=include_trashed).first()
        if key is None:
            raise NotFound(f"Key '{key_id}' not found")
        return key

    def create_key(self, key_data, tags=None) -> bool:
        key = Key(key_data=dict(key_data), type=key_data.get("kty"), thumbprint=key_data.get("kid"))
        key.tags = [Tag(tag_name=name, tag_value=str(value)) for name, value in (tags or {}).items()]
        db.session.add(key)
        self._commit()
        logger.info("Created %s key %s", key.type, key.thumbprint)
        return True

    def _resolve(self, key, **options) -> Key:
        return key if isinstance(key, Key) else self.get_single_key(key, **options)

    def revoke_key(self, key) -> bool:
        key = self._resolve(key)
        key.revoked_at = now_utc()
        self._commit()
        logger.info("Revoked key %s", key.thumbprint)
        return True

    def unrevoke_key(self, key) -> bool:
        key = self._resolve(key, include_revoked=True)
        key.revoked_at = None
        self._commit()
        logger.info("Unrevoked key %s", key.thumbprint)
        return True

    def delete_key(self, keys) -> bool:
        keys = [self._resolve(k, include_revoked=True) for k in _wrap_keys(keys)]
        if not keys:
            return True
        now = now_utc()
        for key in keys:
            key.deleted_at = now
        self._commit()
        logger.info("Deleted %d key(s)", len(keys))
        return True

    def force_delete_key(self, keys) -> bool:
        keys = [self._resolve(k, include_revoked=True, include_trashed=True) for k in _wrap_keys(keys)]
        if not keys:
            return True
        for key in keys:
            db.session.delete(key)
        self._commit()
        logger.info("Purged %d key(s)", len(keys))
        return True


class SQLAlchemyEncryptionKeyRepository(SQLAlchemyRepositoryMixin, EncryptionKeyRepository):
    def _get_model(self, hash: str, include_trashed: bool = False) -> EncryptionKey:
        q = EncryptionKey.query.filter(EncryptionKey.hash == hash)
        if not include_trashed:
            q = q.filter(EncryptionKey.deleted_at.is_(None))
        model = q.first()
        if model is None:
            raise NotFound("Encryption key not found")
        return model

    def get_encryption_key(self, hash) -> str:
        return self._get_model(hash).key

    def create_encryption_key(self, key, hash) -> bool:
        db.session.add(EncryptionKey(key=key, hash=hash))
        self._commit()
        return True

    def delete_encryption_key(self, hash) -> bool:
        self._get_model(hash).deleted_at = now_utc()
        self._commit()
        return True

    def force_delete_encryption_key(self, hash) -> bool:
        db.session.delete(self._get_model(hash, include_trashed=True))
        self._commit()
        return True
