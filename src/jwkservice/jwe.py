"""JWE (RFC 7516) building blocks on top of ``cryptography``.

Only the symmetric key-management algorithms are implemented: AES key wrap,
AES-GCM key wrap, direct encryption and PBES2. Envelopes are single
recipient and use the flattened JSON serialization.
"""
from __future__ import annotations
import hmac
import json
import os
import zlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from cryptography.hazmat.primitives.keywrap import InvalidUnwrap, aes_key_unwrap, aes_key_wrap

from jwkservice.exceptions import ValidationError
from jwkservice.helpers import b64url, b64url_decode

DEFAULT_PBES2_COUNT = 4096
COMPRESSION_METHODS = ("DEF",)


# ---------- content encryption ----------
class ContentEncryption(ABC):
    name: str
    cek_size: int
    iv_size: int

    @abstractmethod
    def encrypt(self, cek: bytes, iv: bytes, plaintext: bytes, aad: bytes) -> Tuple[bytes, bytes]:
        """Return (ciphertext, tag)."""

    @abstractmethod
    def decrypt(self, cek: bytes, iv: bytes, ciphertext: bytes, aad: bytes, tag: bytes) -> bytes: ...


class AESGCMEncryption(ContentEncryption):
    iv_size = 12

    def __init__(self, bits: int):
        self.name = f"A{bits}GCM"
        self.cek_size = bits // 8

    def encrypt(self, cek, iv, plaintext, aad):
        out = AESGCM(cek).encrypt(iv, plaintext, aad)
        return out[:-16], out[-16:]

    def decrypt(self, cek, iv, ciphertext, aad, tag):
        try:
            return AESGCM(cek).decrypt(iv, ciphertext + tag, aad)
        except InvalidTag:
            raise ValidationError("Unable to decrypt the payload: authentication tag mismatch")


class AESCBCHMACEncryption(ContentEncryption):
    """AES_CBC_HMAC_SHA2 composite (RFC 7518 section 5.2)."""
    iv_size = 16

    def __init__(self, bits: int, hash_name: str):
        self.name = f"A{bits // 2}CBC-HS{bits}"
        self.cek_size = bits // 8
        self.hash_name = hash_name

    def _split(self, cek: bytes) -> Tuple[bytes, bytes]:
        half = len(cek) // 2
        return cek[:half], cek[half:]

    def _tag(self, mac_key: bytes, aad: bytes, iv: bytes, ciphertext: bytes) -> bytes:
        al = (len(aad) * 8).to_bytes(8, "big")
        digest = hmac.new(mac_key, aad + iv + ciphertext + al, self.hash_name).digest()
        return digest[: len(mac_key)]

    def encrypt(self, cek, iv, plaintext, aad):
        mac_key, enc_key = self._split(cek)
        padder = padding.PKCS7(128).padder()
        padded = padder.update(plaintext) + padder.finalize()
        encryptor = Cipher(algorithms.AES(enc_key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return ciphertext, self._tag(mac_key, aad, iv, ciphertext)

    def decrypt(self, cek, iv, ciphertext, aad, tag):
        mac_key, enc_key = self._split(cek)
        if not hmac.compare_digest(self._tag(mac_key, aad, iv, ciphertext), tag):
            raise ValidationError("Unable to decrypt the payload: authentication tag mismatch")
        decryptor = Cipher(algorithms.AES(enc_key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(128).unpadder()
        return unpadder.update(padded) + unpadder.finalize()


# ---------- key management ----------
class KeyManagement(ABC):
    name: str

    @abstractmethod
    def wrap(self, key: bytes, cek_size: int) -> Tuple[bytes, bytes, Dict[str, Any]]:
        """Return (cek, encrypted_key, additional header parameters)."""

    @abstractmethod
    def unwrap(self, key: bytes, encrypted_key: bytes, header: Mapping[str, Any], cek_size: int) -> bytes: ...

    def _check_size(self, key: bytes, size: int) -> None:
        if len(key) != size:
            raise ValidationError(f"{self.name} requires a {size * 8} bit key, got {len(key) * 8} bits")


class DirectEncryption(KeyManagement):
    name = "dir"

    def wrap(self, key, cek_size):
        self._check_size(key, cek_size)
        return key, b"", {}

    def unwrap(self, key, encrypted_key, header, cek_size):
        if encrypted_key:
            raise ValidationError("dir envelopes must not carry an encrypted key")
        self._check_size(key, cek_size)
        return key


class AESKeyWrap(KeyManagement):
    def __init__(self, bits: int):
        self.name = f"A{bits}KW"
        self.kek_size = bits // 8

    def wrap(self, key, cek_size):
        self._check_size(key, self.kek_size)
        cek = os.urandom(cek_size)
        return cek, aes_key_wrap(key, cek), {}

    def unwrap(self, key, encrypted_key, header, cek_size):
        self._check_size(key, self.kek_size)
        try:
            return aes_key_unwrap(key, encrypted_key)
        except InvalidUnwrap:
            raise ValidationError("Unable to unwrap the content encryption key")


class AESGCMKeyWrap(KeyManagement):
    def __init__(self, bits: int):
        self.name = f"A{bits}GCMKW"
        self.kek_size = bits // 8

    def wrap(self, key, cek_size):
        self._check_size(key, self.kek_size)
        cek = os.urandom(cek_size)
        iv = os.urandom(12)
        out = AESGCM(key).encrypt(iv, cek, None)
        return cek, out[:-16], {"iv": b64url(iv), "tag": b64url(out[-16:])}

    def unwrap(self, key, encrypted_key, header, cek_size):
        self._check_size(key, self.kek_size)
        try:
            iv = b64url_decode(header["iv"])
            tag = b64url_decode(header["tag"])
        except KeyError:
            raise ValidationError(f"{self.name} requires the 'iv' and 'tag' header parameters")
        try:
            return AESGCM(key).decrypt(iv, encrypted_key + tag, None)
        except InvalidTag:
            raise ValidationError("Unable to unwrap the content encryption key")


class PBES2KeyWrap(KeyManagement):
    _hashes = {256: hashes.SHA256, 384: hashes.SHA384, 512: hashes.SHA512}

    def __init__(self, hash_bits: int, kw_bits: int, count: int = DEFAULT_PBES2_COUNT, salt_size: int = 16):
        self.name = f"PBES2-HS{hash_bits}+A{kw_bits}KW"
        self.hash_class = self._hashes[hash_bits]
        self.kek_size = kw_bits // 8
        self.count = count
        self.salt_size = salt_size

    def _derive(self, password: bytes, p2s: bytes, count: int) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=self.hash_class(),
            length=self.kek_size,
            salt=self.name.encode("ascii") + b"\x00" + p2s,
            iterations=count,
        )
        return kdf.derive(password)

    def wrap(self, key, cek_size):
        if not key:
            raise ValidationError(f"{self.name} requires a non-empty password")
        p2s = os.urandom(self.salt_size)
        cek = os.urandom(cek_size)
        kek = self._derive(key, p2s, self.count)
        return cek, aes_key_wrap(kek, cek), {"p2s": b64url(p2s), "p2c": self.count}

    def unwrap(self, key, encrypted_key, header, cek_size):
        try:
            p2s = b64url_decode(header["p2s"])
            count = int(header["p2c"])
        except (KeyError, TypeError, ValueError):
            raise ValidationError(f"{self.name} requires the 'p2s' and 'p2c' header parameters")
        try:
            return aes_key_unwrap(self._derive(key, p2s, count), encrypted_key)
        except InvalidUnwrap:
            raise ValidationError("Unable to unwrap the content encryption key")


def key_algorithms(pbes2_count: int = DEFAULT_PBES2_COUNT) -> Dict[str, KeyManagement]:
    algs = [
        AESKeyWrap(128), AESKeyWrap(192), AESKeyWrap(256),
        AESGCMKeyWrap(128), AESGCMKeyWrap(192), AESGCMKeyWrap(256),
        DirectEncryption(),
        PBES2KeyWrap(256, 128, pbes2_count),
        PBES2KeyWrap(384, 192, pbes2_count),
        PBES2KeyWrap(512, 256, pbes2_count),
    ]
    return {a.name: a for a in algs}


def content_algorithms() -> Dict[str, ContentEncryption]:
    algs = [
        AESGCMEncryption(128), AESGCMEncryption(192), AESGCMEncryption(256),
        AESCBCHMACEncryption(256, "sha256"),
        AESCBCHMACEncryption(384, "sha384"),
        AESCBCHMACEncryption(512, "sha512"),
    ]
    return {a.name: a for a in algs}


def _shared_key(jwk: Mapping[str, Any]) -> bytes:
    if jwk.get("kty") != "oct" or "k" not in jwk:
        raise ValidationError("JWE recipients must be oct keys")
    return b64url_decode(jwk["k"])


def _compress(data: bytes) -> bytes:
    compressor = zlib.compressobj(wbits=-15)
    return compressor.compress(data) + compressor.flush()


# ---------- JWE value & serializer ----------
@dataclass
class JWE:
    protected: str
    ciphertext: bytes
    iv: bytes
    tag: bytes
    encrypted_key: bytes = b""
    header: Dict[str, Any] = field(default_factory=dict)

    @property
    def protected_header(self) -> Dict[str, Any]:
        return json.loads(b64url_decode(self.protected))


class JSONFlattenedSerializer:
    name = "jwe_json_flattened"

    def serialize(self, jwe: JWE) -> str:
        data: Dict[str, Any] = {"protected": jwe.protected}
        if jwe.header:
            data["header"] = jwe.header
        if jwe.encrypted_key:
            data["encrypted_key"] = b64url(jwe.encrypted_key)
        data["iv"] = b64url(jwe.iv)
        data["ciphertext"] = b64url(jwe.ciphertext)
        data["tag"] = b64url(jwe.tag)
        return json.dumps(data, separators=(",", ":"))

    def unserialize(self, data: Union[str, Mapping[str, Any]]) -> JWE:
        if isinstance(data, str):
            data = json.loads(data)
        try:
            return JWE(
                protected=data["protected"],
                ciphertext=b64url_decode(data["ciphertext"]),
                iv=b64url_decode(data["iv"]),
                tag=b64url_decode(data["tag"]),
                encrypted_key=b64url_decode(data.get("encrypted_key", "")),
                header=dict(data.get("header") or {}),
            )
        except (KeyError, TypeError, ValueError):
            raise ValidationError("Malformed flattened JWE")


# ---------- builder / decrypter ----------
class JWEBuilder:
    def __init__(self, key_algorithms: Mapping[str, KeyManagement], content_algorithms: Mapping[str, ContentEncryption]):
        self.key_algorithms = dict(key_algorithms)
        self.content_algorithms = dict(content_algorithms)

    def _resolve(self, header: Mapping[str, Any]) -> Tuple[KeyManagement, ContentEncryption]:
        try:
            alg = self.key_algorithms[header.get("alg")]
        except KeyError:
            raise ValidationError(f"Unsupported key encryption algorithm '{header.get('alg')}'")
        try:
            enc = self.content_algorithms[header.get("enc")]
        except KeyError:
            raise ValidationError(f"Unsupported content encryption algorithm '{header.get('enc')}'")
        zip_method = header.get("zip")
        if zip_method is not None and zip_method not in COMPRESSION_METHODS:
            raise ValidationError(f"Unsupported compression method '{zip_method}'")
        return alg, enc

    def build(self, payload: bytes, protected_header: Mapping[str, Any], recipient: Mapping[str, Any]) -> JWE:
        alg, enc = self._resolve(protected_header)
        cek, encrypted_key, extra = alg.wrap(_shared_key(recipient), enc.cek_size)

        header = {**protected_header, **extra}
        protected = b64url(json.dumps(header, separators=(",", ":")).encode("utf-8"))

        if header.get("zip") == "DEF":
            payload = _compress(payload)

        iv = os.urandom(enc.iv_size)
        ciphertext, tag = enc.encrypt(cek, iv, payload, protected.encode("ascii"))
        return JWE(protected=protected, ciphertext=ciphertext, iv=iv, tag=tag, encrypted_key=encrypted_key)


class JWEDecrypter(JWEBuilder):
    def decrypt(self, jwe: JWE, recipient: Mapping[str, Any]) -> bytes:
        try:
            header = {**jwe.header, **jwe.protected_header}
        except ValueError:
            raise ValidationError("Malformed JWE protected header")
        alg, enc = self._resolve(header)
        cek = alg.unwrap(_shared_key(recipient), jwe.encrypted_key, header, enc.cek_size)
        plaintext = enc.decrypt(cek, jwe.iv, jwe.ciphertext, jwe.protected.encode("ascii"), jwe.tag)
        if header.get("zip") == "DEF":
            plaintext = zlib.decompress(plaintext, -15)
        return plaintext
