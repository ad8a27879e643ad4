import base64
import secrets
import string
import uuid
from datetime import datetime, timezone

RANDOM_ALPHABET = string.ascii_letters + string.digits


def b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def b64url_decode(data: str) -> bytes:
    # add padding back for Python's base64
    pad = "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(data + pad)


def b64url_uint(n: int) -> str:
    l = max((n.bit_length() + 7) // 8, 1)
    return b64url(n.to_bytes(l, "big"))


def now_utc():
    return datetime.now(timezone.utc)


def is_uuid(value: str) -> bool:
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


def random_string(length: int) -> str:
    return "".join(secrets.choice(RANDOM_ALPHABET) for _ in range(length))
