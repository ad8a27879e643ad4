from __future__ import annotations
import base64
import binascii
import hmac
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from functools import wraps
from typing import Any, FrozenSet, Mapping, NamedTuple, Optional

from flask import abort, g, request

from jwkservice.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"
# Roles understood by the key routes; "admin" grants all of them
KEY_ROLES = frozenset({"view", "create", "rotate", "revoke", "delete", ADMIN_ROLE})


class ClientCredentials(NamedTuple):
    client_id: str
    client_secret: str


@dataclass(frozen=True)
class Principal:
    client_id: str
    roles: FrozenSet[str] = field(default_factory=frozenset)

    def may(self, *required: str) -> bool:
        return ADMIN_ROLE in self.roles or bool(self.roles.intersection(required))


def _principal_from_record(client_id: str, record: Mapping[str, Any], client_secret: str) -> Optional[Principal]:
    if not hmac.compare_digest(str(record.get("client_secret", "")), client_secret):
        return None
    roles = frozenset(record.get("roles", []))
    unknown = roles - KEY_ROLES
    if unknown:
        logger.warning("Client %s has unknown role(s): %s", client_id, ", ".join(sorted(unknown)))
    return Principal(client_id=client_id, roles=roles & KEY_ROLES)


# ---------- Repository interface ----------
class AuthRepository(ABC):
    @abstractmethod
    def authenticate(self, client_id: str, client_secret: str) -> Optional[Principal]:
        """Return the caller's Principal, or None when the credentials are rejected."""


class InMemoryAuthRepository(AuthRepository):
    """
    accounts: { client_id: { "client_secret": "...", "roles": ["view", ...] } }
    """
    def __init__(self, accounts: Mapping[str, Mapping[str, Any]]):
        self.accounts = dict(accounts or {})

    def authenticate(self, client_id, client_secret):
        record = self.accounts.get(client_id)
        if record is None:
            return None
        return _principal_from_record(client_id, record, client_secret)


class AWSSecretsAuthRepository(AuthRepository):
    """
    One Secrets Manager secret per client, named ``<prefix>/<client_id>``,
    holding ``{"client_secret": "...", "roles": [...]}``.
    """
    def __init__(self, boto3_client, secret_prefix: str):
        self.client = boto3_client
        self.prefix = secret_prefix.rstrip("/")

    def authenticate(self, client_id, client_secret):
        from botocore.exceptions import ClientError

        try:
            resp = self.client.get_secret_value(SecretId=f"{self.prefix}/{client_id}")
        except ClientError as e:
            logger.info("Secret lookup failed for client %s: %s", client_id, e.response.get("Error", {}).get("Code"))
            return None
        try:
            record = json.loads(resp.get("SecretString") or "")
        except ValueError:
            logger.warning("Secret for client %s is not valid JSON", client_id)
            return None
        return _principal_from_record(client_id, record, client_secret)


def build_auth_repository(config: Mapping[str, Any]) -> Optional[AuthRepository]:
    """Pick the repository named by ``AUTH_BACKEND``; ``none`` disables auth."""
    backend = config.get("AUTH_BACKEND", "none")
    if backend == "none":
        return None
    if backend == "inmemory":
        return InMemoryAuthRepository(config.get("INMEM_ACCOUNTS", {}))
    if backend == "aws":
        import boto3
        sm = boto3.client("secretsmanager", region_name=config["AWS_REGION"])
        return AWSSecretsAuthRepository(sm, config["AWS_SECRETS_PREFIX"])
    raise ConfigurationError(f"Unsupported AUTH_BACKEND={backend}")


# ---------- Request parsing ----------
def _parse_basic_auth(auth_header: str) -> Optional[ClientCredentials]:
    try:
        scheme, encoded = auth_header.split(" ", 1)
        if scheme.lower() != "basic":
            return None
        client_id, client_secret = base64.b64decode(encoded).decode("utf-8").split(":", 1)
    except (ValueError, binascii.Error, UnicodeDecodeError):
        return None
    return ClientCredentials(client_id, client_secret)


def get_client_credentials_from_request() -> Optional[ClientCredentials]:
    # Authorization: Basic base64(client_id:client_secret) wins over the X-Client-* pair
    header = request.headers.get("Authorization")
    creds = _parse_basic_auth(header) if header else None
    if creds:
        return creds
    client_id = request.headers.get("X-Client-Id")
    client_secret = request.headers.get("X-Client-Secret")
    if client_id and client_secret:
        return ClientCredentials(client_id, client_secret)
    return None


# ---------- Decorator factory ----------
def make_require_roles(auth_repo: Optional[AuthRepository]):
    """
    Returns a decorator @require_roles('rotate') that rejects missing or bad
    credentials with 401 and callers holding none of the roles (nor 'admin')
    with 403. The authenticated Principal is left on ``flask.g.principal``.
    With no repository every route passes through.
    """
    def require_roles(*required_roles: str):
        def wrapper(fn):
            if auth_repo is None:
                return fn

            @wraps(fn)
            def inner(*args, **kwargs):
                creds = get_client_credentials_from_request()
                if creds is None:
                    abort(401, description="Missing credentials")
                principal = auth_repo.authenticate(*creds)
                if principal is None:
                    abort(401, description="Invalid credentials")
                if not principal.may(*required_roles):
                    logger.info("Client %s denied %s (needs %s)", principal.client_id, request.path,
                                "/".join(required_roles))
                    abort(403, description="Insufficient role")
                g.principal = principal
                return fn(*args, **kwargs)
            return inner
        return wrapper
    return require_roles
