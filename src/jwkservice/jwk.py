from __future__ import annotations
import hashlib
import json
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Union

from jwkservice.exceptions import UnsupportedOperation, ValidationError
from jwkservice.helpers import b64url

# Members hashed into the RFC 7638 thumbprint, per key type
THUMBPRINT_MEMBERS: Dict[str, tuple] = {
    "RSA": ("e", "kty", "n"),
    "EC": ("crv", "kty", "x", "y"),
    "OKP": ("crv", "kty", "x"),
    "oct": ("k", "kty"),
}

PRIVATE_MEMBERS: Dict[str, tuple] = {
    "RSA": ("d", "p", "q", "dp", "dq", "qi", "oth"),
    "EC": ("d",),
    "OKP": ("d",),
}

# Optional members that may be embedded into a generated key
EXTRA_PARAMETERS = ("alg", "use")

JWK = Dict[str, Any]


def thumbprint(jwk: Mapping[str, Any], hash_name: str = "sha256") -> str:
    """Compute the RFC 7638 thumbprint of a JWK.

    Only the required members of the key type are hashed, serialized with
    sorted keys and no whitespace, so the result does not depend on the
    member order of the source mapping.
    """
    kty = jwk.get("kty")
    try:
        members = THUMBPRINT_MEMBERS[kty]
    except KeyError:
        raise ValidationError(f"Cannot compute thumbprint for key type '{kty}'")
    missing = [m for m in members if m not in jwk]
    if missing:
        raise ValidationError(f"Key is missing required member(s): {', '.join(missing)}")
    canonical = json.dumps({m: jwk[m] for m in members}, sort_keys=True, separators=(",", ":"))
    digest = hashlib.new(hash_name, canonical.encode("utf-8")).digest()
    return b64url(digest)


def add_thumbprint(jwk: Mapping[str, Any]) -> JWK:
    """Return the JWK with ``kid`` as its first member, computing it if absent."""
    if "kid" in jwk:
        return dict(jwk)
    return {"kid": thumbprint(jwk), **jwk}


def has_public_form(kty: str) -> bool:
    return kty in PRIVATE_MEMBERS


def is_private(jwk: Mapping[str, Any]) -> bool:
    return any(m in jwk for m in PRIVATE_MEMBERS.get(jwk.get("kty"), ()))


def to_public(jwk: Mapping[str, Any]) -> JWK:
    kty = jwk.get("kty")
    if not has_public_form(kty):
        raise UnsupportedOperation(f"Key type '{kty}' has no public form")
    private = PRIVATE_MEMBERS[kty]
    return {k: v for k, v in jwk.items() if k not in private}


def key_to_jwk(key, public_key: bool = False) -> JWK:
    """Convert a stored key record into a JWK.

    ``key`` is anything exposing ``key_data`` and ``revoked``. Revoked keys
    and ``public_key=True`` yield the public projection.
    """
    jwk = add_thumbprint(key.key_data)
    if key.revoked or public_key:
        jwk = to_public(jwk)
    return jwk


def jwk_to_key_data(jwk: Mapping[str, Any]) -> JWK:
    return dict(jwk)


class JWKSet:
    """Ordered collection of JWKs serializing to ``{"keys": [...]}``."""

    def __init__(self, keys: Iterable[Mapping[str, Any]] = ()):
        self.keys: List[JWK] = [dict(k) for k in keys]

    @classmethod
    def create(cls, jwks: Union["JWKSet", Mapping[str, Any], Iterable[Mapping[str, Any]]]) -> "JWKSet":
        if isinstance(jwks, JWKSet):
            return jwks
        if isinstance(jwks, Mapping):
            if "keys" in jwks:
                return cls.from_dict(jwks)
            return cls([jwks])
        return cls(jwks)

    @classmethod
    def from_dict(cls, data: Union[Mapping[str, Any], List[Mapping[str, Any]]]) -> "JWKSet":
        if isinstance(data, Mapping):
            data = data.get("keys", [])
        return cls(data)

    def to_dict(self) -> Dict[str, List[JWK]]:
        return {"keys": [dict(k) for k in self.keys]}

    def thumbprints(self) -> List[str]:
        return [k.get("kid") or thumbprint(k) for k in self.keys]

    def __len__(self) -> int:
        return len(self.keys)

    def __iter__(self) -> Iterator[JWK]:
        return iter(self.keys)

    def __eq__(self, other) -> bool:
        return isinstance(other, JWKSet) and self.keys == other.keys

    def __repr__(self) -> str:
        return f"JWKSet(kids={self.thumbprints()!r})"
