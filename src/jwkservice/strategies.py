from __future__ import annotations
import logging
import secrets
from abc import ABC, abstractmethod
from enum import Enum
from typing import Dict, Any, Mapping, Optional

from cryptography.hazmat.primitives.asymmetric import rsa, ec, ed25519, ed448, x25519, x448
from cryptography.hazmat.primitives import serialization

from jwkservice.exceptions import (
    UnsupportedCurve,
    UnsupportedKeyType,
    UnsupportedOperation,
    ValidationError,
)
from jwkservice.helpers import b64url, b64url_decode, b64url_uint
from jwkservice.jwk import EXTRA_PARAMETERS, JWK, add_thumbprint

logger = logging.getLogger(__name__)


class KeyType(str, Enum):
    RSA = "RSA"
    EC = "EC"
    OKP = "OKP"
    OCT = "OCT"

    @classmethod
    def parse(cls, value: Optional[str]) -> "KeyType":
        try:
            return cls(str(value or cls.RSA.value).upper())
        except ValueError:
            raise UnsupportedKeyType(
                f"Unsupported key_type '{value}'. Supported: {', '.join(t.value for t in cls)}"
            )


def _int_option(options: Mapping[str, Any], name: str, default: int) -> int:
    value = options.get(name)
    if value in (None, ""):
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{name} must be an integer")


def _raw_private(key) -> bytes:
    return key.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )


def _raw_public(key) -> bytes:
    return key.public_bytes(encoding=serialization.Encoding.Raw, format=serialization.PublicFormat.Raw)


# ---------- Strategy interface ----------
class KeyStrategy(ABC):
    key_type: KeyType

    @abstractmethod
    def default_options(self) -> Dict[str, Any]:
        """Options used when the caller leaves them out."""

    @abstractmethod
    def generate(self, options: Mapping[str, Any]) -> JWK:
        """Generate a new private JWK (without kid) for the given options."""

    @abstractmethod
    def key_params(self, jwk: Mapping[str, Any]) -> Dict[str, Any]:
        """Recover the options needed to generate an equivalent key."""


# ---------- RSA ----------
class RSAKeyStrategy(KeyStrategy):
    key_type = KeyType.RSA

    def __init__(self, min_size: int = 2048, default_size: int = 4096):
        self.min_size = min_size
        self.default_size = default_size

    def default_options(self):
        return {"bit_size": self.default_size}

    def generate(self, options):
        size = _int_option(options, "bit_size", self.default_size)
        if size < self.min_size:
            raise ValidationError(f"bit_size must be at least {self.min_size} for RSA keys")
        priv = rsa.generate_private_key(public_exponent=65537, key_size=size)
        numbers = priv.private_numbers()
        public = numbers.public_numbers
        return {
            "kty": "RSA",
            "n": b64url_uint(public.n),
            "e": b64url_uint(public.e),
            "d": b64url_uint(numbers.d),
            "p": b64url_uint(numbers.p),
            "q": b64url_uint(numbers.q),
            "dp": b64url_uint(numbers.dmp1),
            "dq": b64url_uint(numbers.dmq1),
            "qi": b64url_uint(numbers.iqmp),
        }

    def key_params(self, jwk):
        # Bit size is not stored; derive it from the modulus length
        modulus = b64url_decode(jwk["n"])
        return {"bit_size": len(modulus) * 8}


# ---------- EC ----------
class ECKeyStrategy(KeyStrategy):
    key_type = KeyType.EC
    curves = {
        "P-256": ec.SECP256R1,
        "P-384": ec.SECP384R1,
        "P-521": ec.SECP521R1,
        "secp256k1": ec.SECP256K1,
    }

    def default_options(self):
        return {"curve": "P-256"}

    def generate(self, options):
        crv = options.get("curve") or "P-256"
        try:
            curve = self.curves[crv]()
        except (KeyError, TypeError):
            raise UnsupportedCurve(f"Unsupported EC curve '{crv}'. Supported: {', '.join(self.curves)}")
        priv = ec.generate_private_key(curve)
        numbers = priv.private_numbers()
        size = (curve.key_size + 7) // 8
        return {
            "kty": "EC",
            "crv": crv,
            "x": b64url(numbers.public_numbers.x.to_bytes(size, "big")),
            "y": b64url(numbers.public_numbers.y.to_bytes(size, "big")),
            "d": b64url(numbers.private_value.to_bytes(size, "big")),
        }

    def key_params(self, jwk):
        return {"curve": jwk["crv"]}


# ---------- OKP (Ed25519, Ed448, X25519, X448) ----------
class OKPKeyStrategy(KeyStrategy):
    key_type = KeyType.OKP
    curves = {
        "Ed25519": ed25519.Ed25519PrivateKey,
        "Ed448": ed448.Ed448PrivateKey,
        "X25519": x25519.X25519PrivateKey,
        "X448": x448.X448PrivateKey,
    }

    def default_options(self):
        return {"curve": "Ed25519"}

    def generate(self, options):
        crv = options.get("curve") or "Ed25519"
        try:
            key_class = self.curves[crv]
        except (KeyError, TypeError):
            raise UnsupportedCurve(f"Unsupported OKP curve '{crv}'. Supported: {', '.join(self.curves)}")
        priv = key_class.generate()
        return {
            "kty": "OKP",
            "crv": crv,
            "x": b64url(_raw_public(priv.public_key())),
            "d": b64url(_raw_private(priv)),
        }

    def key_params(self, jwk):
        return {"curve": jwk["crv"]}


# ---------- oct (symmetric) ----------
class OctKeyStrategy(KeyStrategy):
    key_type = KeyType.OCT

    def __init__(self, default_size: int = 512):
        self.default_size = default_size

    def default_options(self):
        return {"bit_size": self.default_size, "secret": ""}

    def generate(self, options):
        secret = options.get("secret")
        if secret:
            # Deterministic: the secret itself is the key material
            return {"kty": "oct", "k": b64url(str(secret).encode("utf-8"))}
        size = _int_option(options, "bit_size", self.default_size)
        if size <= 0 or size % 8:
            raise ValidationError("bit_size must be a positive multiple of 8 for oct keys")
        return {"kty": "oct", "k": b64url(secrets.token_bytes(size // 8))}

    def key_params(self, jwk):
        raise UnsupportedOperation("Can't get key parameters from an oct key")


# ---------- registry ----------
class StrategyRegistry:
    def __init__(self):
        self._by_type: dict[KeyType, KeyStrategy] = {}

    def register(self, strategy: KeyStrategy) -> None:
        self._by_type[strategy.key_type] = strategy

    def get(self, key_type) -> KeyStrategy:
        kt = key_type if isinstance(key_type, KeyType) else KeyType.parse(key_type)
        try:
            return self._by_type[kt]
        except KeyError:
            raise UnsupportedKeyType(f"No generator registered for key_type '{kt.value}'")


def default_registry(min_rsa_size: int = 2048, default_rsa_size: int = 4096) -> StrategyRegistry:
    registry = StrategyRegistry()
    registry.register(RSAKeyStrategy(min_size=min_rsa_size, default_size=default_rsa_size))
    registry.register(ECKeyStrategy())
    registry.register(OKPKeyStrategy())
    registry.register(OctKeyStrategy())
    return registry


# ---------- generator facade ----------
class KeyGenerator:
    """Generates JWKs and recovers the parameters they were generated with."""

    def __init__(self, registry: Optional[StrategyRegistry] = None):
        self.registry = registry or default_registry()

    def default_parameters(self, key_type, include_extra: bool = False) -> Dict[str, Any]:
        kt = KeyType.parse(key_type)
        options = {"key_type": kt.value, **self.registry.get(kt).default_options()}
        if include_extra:
            options.update({name: "" for name in EXTRA_PARAMETERS})
        return options

    def generate_key(self, options: Mapping[str, Any]) -> JWK:
        """Generate a key for ``options`` (``key_type``, ``bit_size``, ``curve``,
        ``secret``, ``alg``, ``use``) and return it with its thumbprint as ``kid``."""
        kt = KeyType.parse(options.get("key_type"))
        jwk = self.registry.get(kt).generate(options)
        jwk.update({name: options[name] for name in EXTRA_PARAMETERS if options.get(name)})
        jwk = add_thumbprint(jwk)
        logger.debug("Generated %s key %s", kt.value, jwk["kid"])
        return jwk

    def get_key_params(self, jwk: Mapping[str, Any]) -> Dict[str, Any]:
        kt = KeyType.parse(jwk.get("kty"))
        params = {"key_type": kt.value, **self.registry.get(kt).key_params(jwk)}
        params.update({name: jwk[name] for name in EXTRA_PARAMETERS if name in jwk})
        return params
