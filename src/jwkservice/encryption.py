from __future__ import annotations
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Union

from jwkservice.exceptions import ConfigurationError, ValidationError
from jwkservice.helpers import random_string
from jwkservice.jwe import (
    DEFAULT_PBES2_COUNT,
    JSONFlattenedSerializer,
    JWEBuilder,
    JWEDecrypter,
    content_algorithms,
    key_algorithms,
)
from jwkservice.jwk import JWKSet
from jwkservice.strategies import KeyGenerator

logger = logging.getLogger(__name__)

DEFAULT_KEY_ALGORITHM = "PBES2-HS256+A128KW"
DEFAULT_CONTENT_ALGORITHM = "A128GCM"
ENCRYPTION_KEY_SIZE = 64


@dataclass(frozen=True)
class EncryptionSettings:
    enabled: bool = False
    key_algorithm: Optional[str] = DEFAULT_KEY_ALGORITHM
    content_algorithm: Optional[str] = DEFAULT_CONTENT_ALGORITHM
    compression: bool = False
    strict_algorithms: bool = False
    pbes2_count: int = DEFAULT_PBES2_COUNT

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "EncryptionSettings":
        return cls(
            enabled=bool(config.get("JWK_ENCRYPTION_ENABLED", False)),
            key_algorithm=config.get("JWK_ENCRYPTION_KEY_ALGORITHM"),
            content_algorithm=config.get("JWK_ENCRYPTION_CONTENT_ALGORITHM"),
            compression=bool(config.get("JWK_ENCRYPTION_ENABLE_PAYLOAD_COMPRESSION", False)),
            strict_algorithms=bool(config.get("JWK_ENCRYPTION_STRICT_ALGORITHMS", False)),
            pbes2_count=int(config.get("JWK_ENCRYPTION_PBES2_COUNT") or DEFAULT_PBES2_COUNT),
        )


class KeyEncryptor:
    """Wraps a JWK or JWK Set into a flattened JWE for transport.

    The encryption secret is turned into an oct key through the key
    generator; the header algorithms come from ``settings``.
    """

    def __init__(self, generator: KeyGenerator, settings: EncryptionSettings):
        self.generator = generator
        self.settings = settings
        self.key_algorithms = key_algorithms(settings.pbes2_count)
        self.content_algorithms = content_algorithms()
        self.serializer = JSONFlattenedSerializer()
        # Resolved once so misconfiguration is reported at startup
        self.key_algorithm = self._select_algorithm("key", settings.key_algorithm, DEFAULT_KEY_ALGORITHM)
        self.content_algorithm = self._select_algorithm(
            "content", settings.content_algorithm, DEFAULT_CONTENT_ALGORITHM
        )

    def is_enabled(self) -> bool:
        return self.settings.enabled

    def _select_algorithm(self, kind: str, selected: Optional[str], default: str) -> str:
        allowed = self.key_algorithms if kind == "key" else self.content_algorithms
        if selected in allowed:
            return selected
        if self.settings.strict_algorithms:
            raise ConfigurationError(f"Unsupported {kind} encryption algorithm '{selected}'")
        if selected:
            logger.warning("Unsupported %s encryption algorithm %r, falling back to %s", kind, selected, default)
        return default

    @staticmethod
    def _payload(keys) -> Optional[Dict[str, Any]]:
        if isinstance(keys, JWKSet):
            # A one-key set is sent as the key itself
            if len(keys) == 1:
                return {"payload": keys.keys[0], "cty": "jwk+json"}
            return {"payload": keys.to_dict(), "cty": "jwk-set+json"}
        if isinstance(keys, Mapping) and "kty" in keys:
            return {"payload": dict(keys), "cty": "jwk+json"}
        return None

    def header(self, cty: str) -> Dict[str, str]:
        header = {
            "alg": self.key_algorithm,
            "enc": self.content_algorithm,
            "zip": "DEF" if self.settings.compression else None,
            "cty": cty,
        }
        return {k: v for k, v in header.items() if v}

    def encrypt_key_set(self, keys: Union[JWKSet, Mapping[str, Any]], encryption_key: Optional[str]):
        """Encrypt ``keys`` with ``encryption_key``.

        Returns ``keys`` unchanged when encryption is disabled, ``None`` when
        the input is not a JWK/JWK Set or no key is given, and otherwise the
        flattened JWE as a dict.
        """
        if not self.is_enabled():
            return keys

        if not encryption_key:
            return None
        key_payload = self._payload(keys)
        if key_payload is None:
            return None

        encryption_jwk = self.generator.generate_key({"key_type": "oct", "secret": encryption_key})

        builder = JWEBuilder(self.key_algorithms, self.content_algorithms)
        payload = json.dumps(key_payload["payload"], separators=(",", ":")).encode("utf-8")
        jwe = builder.build(payload, self.header(key_payload["cty"]), encryption_jwk)

        # Hand back a structure rather than a string; the response layer re-encodes it
        return json.loads(self.serializer.serialize(jwe))

    def decrypt_key_set(self, envelope: Union[str, Mapping[str, Any]], encryption_key: str):
        """Reverse :meth:`encrypt_key_set`, returning a JWK dict or a JWKSet."""
        encryption_jwk = self.generator.generate_key({"key_type": "oct", "secret": encryption_key})
        decrypter = JWEDecrypter(self.key_algorithms, self.content_algorithms)
        jwe = self.serializer.unserialize(envelope)
        data = json.loads(decrypter.decrypt(jwe, encryption_jwk))
        if jwe.protected_header.get("cty") == "jwk-set+json":
            return JWKSet.from_dict(data)
        return data


def generate_encryption_key(secret: str, size: int = ENCRYPTION_KEY_SIZE) -> Dict[str, str]:
    """Create a random encryption key and its lookup hash.

    The hash is an HMAC-SHA256 of the key under ``secret``; only the hash is
    handed out as the lookup token.
    """
    if not secret:
        raise ValidationError("A secret must be provided to generate the encryption key")
    key = random_string(size)
    digest = hmac.new(secret.encode("utf-8"), key.encode("utf-8"), hashlib.sha256).hexdigest()
    return {"key": key, "hash": digest}
