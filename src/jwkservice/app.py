from __future__ import annotations
import hashlib
import json
import logging
from types import SimpleNamespace
from typing import Callable, Dict

from flask import Flask, jsonify, request, abort, url_for
from werkzeug.exceptions import HTTPException
from redis.exceptions import RedisError

from jwkservice.auth import build_auth_repository, make_require_roles
from jwkservice.cache import KeyCache, MemoryCacheStore, RedisCacheStore
from jwkservice.config import Config
from jwkservice.encryption import EncryptionSettings, KeyEncryptor, generate_encryption_key
from jwkservice.exceptions import ConfigurationError, KeyServiceError, ValidationError
from jwkservice.extensions import db, make_redis_client
from jwkservice.jwk import JWKSet, has_public_form, jwk_to_key_data, key_to_jwk
from jwkservice.repositories import SQLAlchemyEncryptionKeyRepository, SQLAlchemyKeyRepository
from jwkservice.strategies import KeyGenerator, default_registry

LIST_TYPES = ("all", "private", "public")
LIST_CACHE_GROUP = "list"


def _truthy(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _prefixed_params(prefix: str) -> Dict[str, str]:
    return {k[len(prefix):]: v for k, v in request.args.items() if k.startswith(prefix) and len(k) > len(prefix)}


def _list_cache_key(key_type: str, tags: Dict[str, str]) -> str:
    if not tags:
        return key_type
    tags_key = hashlib.md5(json.dumps(tags, sort_keys=True).encode("utf-8")).hexdigest()
    return f"{key_type}:{tags_key}"


def _build_repositories(app: Flask):
    storage = app.config.get("STORAGE_BACKEND", "sqlalchemy")
    if storage == "sqlalchemy":
        with app.app_context():
            db.create_all()
        return SQLAlchemyKeyRepository(), SQLAlchemyEncryptionKeyRepository()
    if storage == "psycopg":
        # Psycopg repos manage their own table DDL if missing
        from jwkservice.repositories_psycopg import PsycopgEncryptionKeyRepository, PsycopgKeyRepository
        repo = PsycopgKeyRepository(app.config["POSTGRES_DSN"])
        return repo, PsycopgEncryptionKeyRepository(conn=repo.conn)
    raise ConfigurationError(f"Unsupported STORAGE_BACKEND={storage}")


def _build_cache(app: Flask) -> KeyCache:
    backend = app.config.get("CACHE_BACKEND", "memory")
    if backend == "redis":
        store = RedisCacheStore(make_redis_client(app.config["REDIS_URL"]), app.config["CACHE_REDIS_PREFIX"])
    elif backend == "memory":
        store = MemoryCacheStore(app.config.get("CACHE_REDIS_PREFIX", ""))
    else:
        raise ConfigurationError(f"Unsupported CACHE_BACKEND={backend}")
    return KeyCache(store, prefix=app.config.get("CACHE_KEY_PREFIX", "keys"), default_ttl=app.config.get("CACHE_TTL"))


def create_app(config_class=Config) -> Flask:
    app = Flask(__name__)
    app.config.from_object(config_class)
    logging.getLogger("jwkservice").setLevel(app.config.get("LOG_LEVEL", "INFO"))
    db.init_app(app)

    # Core components
    generator = KeyGenerator(default_registry(
        min_rsa_size=app.config["MIN_RSA_KEY_SIZE"],
        default_rsa_size=app.config["DEFAULT_RSA_KEY_SIZE"],
    ))
    encryptor = KeyEncryptor(generator, EncryptionSettings.from_config(app.config))
    cache = _build_cache(app)
    repo, encryption_repo = _build_repositories(app)
    require_roles = make_require_roles(build_auth_repository(app.config))

    app.extensions["jwkservice"] = SimpleNamespace(
        generator=generator, encryptor=encryptor, cache=cache, repo=repo, encryption_repo=encryption_repo,
    )
    app.logger.info(
        "Key service ready (storage=%s, cache=%s, encryption=%s)",
        app.config.get("STORAGE_BACKEND"), app.config.get("CACHE_BACKEND"), encryptor.is_enabled(),
    )

    # ---------------- helpers ----------------
    def purge_list_cache() -> None:
        # Runs after the write committed; failures are reported, not raised
        try:
            purged = cache.purge(LIST_CACHE_GROUP)
        except RedisError:
            app.logger.warning("Cache purge of group %r failed", LIST_CACHE_GROUP, exc_info=True)
            return
        if purged is False:
            app.logger.warning("Cache purge of group %r stopped early", LIST_CACHE_GROUP)

    def encrypt_key_set_if_required(should_encrypt: bool, build: Callable[[bool], JWKSet],
                                    throw_on_missing_key: bool = True):
        if not encryptor.is_enabled() or not should_encrypt:
            return build(False)

        token = request.args.get("encryption:key") or request.headers.get("X-Encryption-Key")
        if not token:
            if not throw_on_missing_key:
                return build(False)
            raise ValidationError("No encryption key has been provided")

        secret = encryption_repo.get_encryption_key(token)
        encrypted = encryptor.encrypt_key_set(build(True), secret)
        if encrypted is None:
            raise ValidationError("Unable to encrypt the key set")
        return encrypted

    def render(result):
        return jsonify(result.to_dict() if isinstance(result, JWKSet) else result)

    def request_body() -> dict:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}

    def request_flag(name: str) -> bool:
        return _truthy(request_body().get(name, request.args.get(name, False)))

    def created_headers(kid: str) -> Dict[str, str]:
        return {"Location": url_for("get_key", key_id=kid), "X-JWK-Thumbprint": kid}

    # ---------------- errors ----------------
    @app.errorhandler(KeyServiceError)
    def handle_key_service_error(e: KeyServiceError):
        if e.status_code >= 500:
            app.logger.error("%s: %s", type(e).__name__, e)
        return jsonify({"error": [str(e)]}), e.status_code

    @app.errorhandler(HTTPException)
    def handle_http_error(e: HTTPException):
        return jsonify({"error": [e.description]}), e.code

    # ---------------- routes ----------------
    @app.get("/health")
    def health():
        return jsonify({"status": "ok"})

    def list_keys(key_type: str):
        tags = _prefixed_params("tag:")
        include_revoked = key_type in ("all", "public")
        public_only = key_type == "public"

        def build(_encrypted: bool) -> JWKSet:
            cache_key = _list_cache_key(key_type, tags)
            cached = cache.get(LIST_CACHE_GROUP, cache_key)
            if cached is not None:
                return JWKSet.from_dict(cached)

            keys = repo.get_all(include_revoked=include_revoked, tags=tags)
            # Symmetric keys have no public form, leave them out wherever one is needed
            keys = [k for k in keys
                    if has_public_form(k.key_data.get("kty")) or not (public_only or k.revoked)]
            key_set = JWKSet(key_to_jwk(k, public_only) for k in keys)
            if len(key_set):
                cache.store(LIST_CACHE_GROUP, cache_key, key_set)
            return key_set

        return render(encrypt_key_set_if_required(key_type in ("all", "private"), build))

    @require_roles("view")
    def list_protected_keys(key_type: str):
        return list_keys(key_type)

    @require_roles("view")
    def get_single_key(key_id: str):
        key = repo.get_single_key(key_id, include_revoked=True)

        def build(encrypted: bool) -> JWKSet:
            if not encrypted and not has_public_form(key.key_data.get("kty")):
                raise ValidationError("Symmetric keys can only be returned encrypted")
            return JWKSet.create(key_to_jwk(key, public_key=not encrypted))

        return render(encrypt_key_set_if_required(not key.revoked, build, throw_on_missing_key=False))

    @app.get("/keys/<key_id>")
    def get_key(key_id: str):
        if key_id == "public":
            return list_keys(key_id)
        if key_id in LIST_TYPES:
            return list_protected_keys(key_id)
        return get_single_key(key_id)

    @app.post("/keys/generate")
    @require_roles("create")
    def generate_key():
        data = request_body()
        key_type = data.get("key_type") or app.config["DEFAULT_KEY_TYPE"]
        defaults = generator.default_parameters(key_type, include_extra=True)
        params = {name: data.get(name, default) for name, default in defaults.items()}

        tags = data.get("tags") or {}
        if not isinstance(tags, dict):
            abort(400, description="tags must be an object of name/value pairs")
        tags = {**_prefixed_params("tag:"), **tags}

        jwk = generator.generate_key(params)
        key_data = jwk_to_key_data(jwk)
        repo.create_key(key_data, tags)
        purge_list_cache()

        return app.response_class(status=201, headers=created_headers(key_data["kid"]))

    @app.post("/keys/cleanup")
    @require_roles("delete")
    def cleanup_keys():
        data = request_body()
        tags = _prefixed_params("tag:")
        try:
            days = int(data.get("days", app.config["CLEANUP_DEFAULT_DAYS"]))
        except (TypeError, ValueError):
            abort(400, description="days must be an integer")
        force = request_flag("force")

        keys = repo.get_all(tags=tags, only_revoked=True, include_trashed=force)
        keys = [k for k in keys if k.can_be_cleaned_up(days)]
        if force:
            repo.force_delete_key(keys)
        else:
            repo.delete_key(keys)
        app.logger.info("Cleaned up %d revoked key(s) older than %d days (force=%s)", len(keys), days, force)
        purge_list_cache()
        return "", 204

    @app.post("/keys/<key_id>/rotate")
    @require_roles("rotate")
    def rotate_key(key_id: str):
        key = repo.get_single_key(key_id)
        params = generator.get_key_params(key_to_jwk(key))
        new_data = jwk_to_key_data(generator.generate_key(params))
        tags = dict(key.tag_map)

        # Revoke + create commit together
        with repo.transaction():
            repo.revoke_key(key)
            repo.create_key(new_data, tags)
        app.logger.info("Rotated key %s to %s", key.thumbprint, new_data["kid"])
        purge_list_cache()

        return app.response_class(status=204, headers=created_headers(new_data["kid"]))

    @app.post("/keys/<key_id>/revoke")
    @require_roles("revoke")
    def revoke_key(key_id: str):
        key = repo.get_single_key(key_id)
        repo.revoke_key(key)
        purge_list_cache()
        return "", 204

    @app.post("/keys/<key_id>/delete", endpoint="delete_key_action")
    @app.post("/keys/<key_id>")
    @app.delete("/keys/<key_id>", endpoint="delete_key_method")
    @require_roles("delete")
    def delete_key(key_id: str):
        key = repo.get_single_key(key_id, include_revoked=True)
        if request_flag("force"):
            repo.force_delete_key(key)
        else:
            repo.delete_key(key)
        purge_list_cache()
        return "", 204

    @app.post("/encryption_keys/register")
    def register_encryption_key():
        secret = request_body().get("secret", "")
        if not secret:
            raise ValidationError("No secret has been provided")
        key_data = generate_encryption_key(secret)
        encryption_repo.create_encryption_key(key_data["key"], key_data["hash"])
        app.logger.info("Registered a new encryption key")
        return jsonify({"data": key_data})

    return app
