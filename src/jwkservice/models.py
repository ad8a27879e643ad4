import enum
import json
import uuid
from datetime import datetime, timezone

from sqlalchemy import types
from jwkservice.extensions import db
from jwkservice.helpers import b64url, b64url_decode


def _uuid() -> str:
    return str(uuid.uuid4())


def _now():
    return datetime.now(timezone.utc)


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class Base64JSON(types.TypeDecorator):
    """Stores a JSON document base64url-encoded in a text column."""
    impl = types.Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return b64url(json.dumps(value).encode("utf-8"))

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return json.loads(b64url_decode(value))


class KeyState(str, enum.Enum):
    ACTIVE = "active"
    REVOKED = "revoked"
    DELETED = "deleted"


class KeyLifecycle:
    """Lifecycle helpers shared by ORM rows and plain key records.

    Expects ``revoked_at`` and ``deleted_at`` attributes.
    """

    @property
    def revoked(self) -> bool:
        return self.revoked_at is not None

    @property
    def state(self) -> KeyState:
        if self.deleted_at is not None:
            return KeyState.DELETED
        if self.revoked_at is not None:
            return KeyState.REVOKED
        return KeyState.ACTIVE

    def can_be_cleaned_up(self, days: int, now: datetime = None) -> bool:
        if self.revoked_at is None:
            return False
        return ((now or _now()) - _aware(self.revoked_at)).days > days


class Key(KeyLifecycle, db.Model):
    __tablename__ = "keys"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    type = db.Column(db.String(16), nullable=False)  # JWK 'kty'
    key_data = db.Column(Base64JSON, nullable=False)
    thumbprint = db.Column(db.String(128), nullable=False, unique=True, index=True)

    revoked_at = db.Column(db.DateTime(timezone=True), nullable=True)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    tags = db.relationship("Tag", back_populates="key", cascade="all, delete-orphan", lazy="selectin")

    @property
    def tag_map(self) -> dict:
        return {t.tag_name: t.tag_value for t in self.tags}


class Tag(db.Model):
    __tablename__ = "tags"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    key_id = db.Column(db.String(36), db.ForeignKey("keys.id", ondelete="CASCADE"), nullable=False, index=True)
    tag_name = db.Column(db.String(255), nullable=False)
    tag_value = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)

    key = db.relationship("Key", back_populates="tags")


class EncryptionKey(db.Model):
    __tablename__ = "encryption_keys"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    key = db.Column(db.String(255), nullable=False)
    hash = db.Column(db.String(128), nullable=False, index=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_now, onupdate=_now)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)
