from datetime import timedelta
import base64
import pytest

from jwkservice.app import create_app
from jwkservice.config import Config
from jwkservice.exceptions import PersistenceFailure
from jwkservice.extensions import db
from jwkservice.helpers import b64url_decode, now_utc
from jwkservice.jwk import JWKSet
from jwkservice.models import Key

PRIVATE_MEMBERS = {"d", "p", "q", "dp", "dq", "qi"}

def basic(cid, secret):
    token = base64.b64encode(f"{cid}:{secret}".encode()).decode()
    return {"Authorization": f"Basic {token}"}

class TestConfig(Config):
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    STORAGE_BACKEND = "sqlalchemy"
    CACHE_BACKEND = "memory"
    DEFAULT_RSA_KEY_SIZE = 2048
    AUTH_BACKEND = "none"
    JWK_ENCRYPTION_ENABLED = False

class EncryptedConfig(TestConfig):
    JWK_ENCRYPTION_ENABLED = True
    JWK_ENCRYPTION_PBES2_COUNT = 1000

class AuthConfig(TestConfig):
    AUTH_BACKEND = "inmemory"
    INMEM_ACCOUNTS = {
        "viewer":  {"client_secret": "sv", "roles": ["view"]},
        "creator": {"client_secret": "sc", "roles": ["create"]},
        "admin":   {"client_secret": "sa", "roles": ["admin"]},
    }

@pytest.fixture()
def app():
    return create_app(TestConfig)

@pytest.fixture()
def client(app):
    return app.test_client()

def generate(client, body=None, **kwargs):
    r = client.post("/keys/generate", json=body or {"key_type": "EC", "curve": "P-256"}, **kwargs)
    assert r.status_code == 201, r.get_json()
    return r.headers["X-JWK-Thumbprint"]

def kids(response):
    return [k["kid"] for k in response.get_json()["keys"]]

def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200 and r.get_json() == {"status": "ok"}

def test_generate_default_rsa(client):
    r = client.post("/keys/generate", json={})
    assert r.status_code == 201
    kid = r.headers["X-JWK-Thumbprint"]
    assert r.headers["Location"].endswith(f"/keys/{kid}")

    jwk = client.get(f"/keys/{kid}").get_json()["keys"][0]
    assert jwk["kty"] == "RSA" and jwk["kid"] == kid
    assert not PRIVATE_MEMBERS & set(jwk)
    assert len(b64url_decode(jwk["n"])) == 256

def test_generate_with_alg_use_and_tags(client, app):
    kid = generate(client, {"key_type": "OKP", "curve": "Ed25519", "alg": "EdDSA", "use": "sig",
                            "tags": {"env": "prod"}}, query_string={"tag:team": "core"})
    jwk = client.get(f"/keys/{kid}").get_json()["keys"][0]
    assert jwk["crv"] == "Ed25519" and jwk["alg"] == "EdDSA" and jwk["use"] == "sig"
    with app.app_context():
        assert Key.query.filter_by(thumbprint=kid).one().tag_map == {"env": "prod", "team": "core"}

def test_generate_rejects_bad_input(client):
    r = client.post("/keys/generate", json={"key_type": "DSA"})
    assert r.status_code == 400 and "DSA" in r.get_json()["error"][0]
    assert client.post("/keys/generate", json={"key_type": "EC", "curve": "P-1"}).status_code == 400
    assert client.post("/keys/generate", json={"key_type": "RSA", "bit_size": 1024}).status_code == 400
    assert client.post("/keys/generate", json={"key_type": "EC", "tags": ["x"]}).status_code == 400

@pytest.mark.parametrize("body", [{"key_type": "EC", "curve": ["P-256"]}, {"key_type": "OKP", "curve": {"crv": "Ed25519"}}])
def test_generate_rejects_non_string_curve(client, body):
    r = client.post("/keys/generate", json=body)
    assert r.status_code == 400 and "Unsupported" in r.get_json()["error"][0]

def test_generate_duplicate_secret_conflicts(client, app):
    kid = generate(client, {"key_type": "oct", "secret": "topsecret"})
    r = client.post("/keys/generate", json={"key_type": "oct", "secret": "topsecret"})
    assert r.status_code == 409
    assert r.get_json() == {"error": ["Key already exists"]}
    body = r.get_data(as_text=True)
    assert "INSERT" not in body and "dG9wc2VjcmV0" not in body
    with app.app_context():
        assert [k.thumbprint for k in Key.query.all()] == [kid]

def test_list_types(client):
    ec = generate(client)
    okp = generate(client, {"key_type": "OKP", "curve": "X25519"})
    oct_kid = generate(client, {"key_type": "oct", "secret": "shared"})
    client.post(f"/keys/{okp}/revoke")

    private = client.get("/keys/private").get_json()["keys"]
    assert [k["kid"] for k in private] == [ec, oct_kid]
    assert "d" in private[0] and "k" in private[1]

    all_keys = client.get("/keys/all").get_json()["keys"]
    assert [k["kid"] for k in all_keys] == [ec, okp, oct_kid]
    assert "d" in all_keys[0] and "d" not in all_keys[1]

    public = client.get("/keys/public").get_json()["keys"]
    assert [k["kid"] for k in public] == [ec, okp]
    assert all("d" not in k for k in public)

def test_list_tag_filters(client):
    prod = generate(client, {"key_type": "EC", "tags": {"env": "prod"}})
    generate(client, {"key_type": "EC", "tags": {"env": "dev"}})
    r = client.get("/keys/public", query_string={"tag:env": "prod"})
    assert kids(r) == [prod]
    assert client.get("/keys/public", query_string={"tag:env": "qa"}).get_json() == {"keys": []}

def test_list_cache_is_purged_on_writes(client, app):
    first = generate(client)
    assert kids(client.get("/keys/public")) == [first]
    cache = app.extensions["jwkservice"].cache
    assert cache.keys("list") == ["list:public"]

    second = generate(client)
    assert cache.keys("list") == []
    assert kids(client.get("/keys/public")) == [first, second]

def test_single_key_lookup(client, app):
    kid = generate(client)
    with app.app_context():
        key_id = Key.query.filter_by(thumbprint=kid).one().id
    assert kids(client.get(f"/keys/{key_id}")) == [kid]

    r = client.get("/keys/unknown-kid")
    assert r.status_code == 404 and r.get_json()["error"]

    oct_kid = generate(client, {"key_type": "oct"})
    assert client.get(f"/keys/{oct_kid}").status_code == 400

def test_revoke(client):
    kid = generate(client)
    assert client.post(f"/keys/{kid}/revoke").status_code == 204
    assert client.get("/keys/private").get_json() == {"keys": []}
    assert kids(client.get("/keys/public")) == [kid]
    # already revoked
    assert client.post(f"/keys/{kid}/revoke").status_code == 404

def test_rotate_replaces_key(client, app):
    old = generate(client, {"key_type": "EC", "curve": "P-384", "alg": "ES384", "tags": {"env": "prod"}})
    r = client.post(f"/keys/{old}/rotate")
    assert r.status_code == 204
    new = r.headers["X-JWK-Thumbprint"]
    assert new != old and r.headers["Location"].endswith(f"/keys/{new}")

    private = client.get("/keys/private").get_json()["keys"]
    assert [k["kid"] for k in private] == [new]
    assert private[0]["crv"] == "P-384" and private[0]["alg"] == "ES384"
    assert kids(client.get("/keys/all")) == [old, new]
    with app.app_context():
        assert Key.query.filter_by(thumbprint=new).one().tag_map == {"env": "prod"}
        assert Key.query.filter_by(thumbprint=old).one().revoked

def test_rotate_oct_key_is_rejected(client):
    kid = generate(client, {"key_type": "oct"})
    assert client.post(f"/keys/{kid}/rotate").status_code == 400
    assert kids(client.get("/keys/private")) == [kid]

def test_rotate_is_atomic(client, app, monkeypatch):
    old = generate(client)

    def fail(*args, **kwargs):
        raise PersistenceFailure("disk full")

    monkeypatch.setattr(app.extensions["jwkservice"].repo, "create_key", fail)
    r = client.post(f"/keys/{old}/rotate")
    assert r.status_code == 500 and r.get_json() == {"error": ["disk full"]}

    monkeypatch.undo()
    assert kids(client.get("/keys/private")) == [old]
    with app.app_context():
        assert Key.query.count() == 1

@pytest.mark.parametrize("method,path", [("post", "/keys/{}"), ("post", "/keys/{}/delete"), ("delete", "/keys/{}")])
def test_delete_routes(client, app, method, path):
    kid = generate(client)
    r = getattr(client, method)(path.format(kid))
    assert r.status_code == 204
    assert client.get("/keys/all").get_json() == {"keys": []}
    with app.app_context():
        assert Key.query.filter_by(thumbprint=kid).one().deleted_at is not None

def test_force_delete(client, app):
    kid = generate(client)
    client.post(f"/keys/{kid}/revoke")
    assert client.delete(f"/keys/{kid}", query_string={"force": "true"}).status_code == 204
    with app.app_context():
        assert Key.query.count() == 0
    assert client.delete(f"/keys/{kid}").status_code == 404

def backdate_revocation(app, kid, days):
    with app.app_context():
        key = Key.query.filter_by(thumbprint=kid).one()
        key.revoked_at = now_utc() - timedelta(days=days)
        db.session.commit()

def test_cleanup(client, app):
    active = generate(client)
    recent = generate(client)
    stale = generate(client)
    for kid in (recent, stale):
        client.post(f"/keys/{kid}/revoke")
    backdate_revocation(app, stale, 40)

    assert client.post("/keys/cleanup", json={}).status_code == 204
    assert kids(client.get("/keys/all")) == [active, recent]

    with app.app_context():
        assert Key.query.filter_by(thumbprint=stale).one().deleted_at is not None

    # force purges trashed rows too
    assert client.post("/keys/cleanup", json={"days": 30, "force": True}).status_code == 204
    with app.app_context():
        assert Key.query.filter_by(thumbprint=stale).first() is None
        assert Key.query.count() == 2

def test_cleanup_days_and_tags(client, app):
    prod = generate(client, {"key_type": "EC", "tags": {"env": "prod"}})
    dev = generate(client, {"key_type": "EC", "tags": {"env": "dev"}})
    for kid in (prod, dev):
        client.post(f"/keys/{kid}/revoke")
        backdate_revocation(app, kid, 5)

    client.post("/keys/cleanup", json={"days": 2}, query_string={"tag:env": "prod"})
    assert kids(client.get("/keys/all")) == [dev]
    assert client.post("/keys/cleanup", json={"days": "soon"}).status_code == 400

def test_register_encryption_key(client):
    r = client.post("/encryption_keys/register", json={"secret": "s3cret"})
    assert r.status_code == 200
    data = r.get_json()["data"]
    assert len(data["key"]) == 64 and len(data["hash"]) == 64
    assert client.post("/encryption_keys/register", json={}).status_code == 400

def test_unknown_route_is_json(client):
    r = client.get("/nope")
    assert r.status_code == 404 and r.get_json()["error"]


# ---------- encryption ----------
@pytest.fixture()
def enc_app():
    return create_app(EncryptedConfig)

@pytest.fixture()
def enc_client(enc_app):
    return enc_app.test_client()

@pytest.fixture()
def enc_token(enc_client):
    return enc_client.post("/encryption_keys/register", json={"secret": "s3cret"}).get_json()["data"]

def test_encrypted_list_requires_token(enc_client):
    generate(enc_client)
    r = enc_client.get("/keys/private")
    assert r.status_code == 400 and r.get_json()["error"]
    assert enc_client.get("/keys/private", query_string={"encryption:key": "bogus"}).status_code == 404

def test_encrypted_list_round_trip(enc_app, enc_client, enc_token):
    first = generate(enc_client)
    second = generate(enc_client, {"key_type": "OKP"})
    r = enc_client.get("/keys/private", query_string={"encryption:key": enc_token["hash"]})
    assert r.status_code == 200
    envelope = r.get_json()
    assert {"protected", "iv", "ciphertext", "tag"} <= set(envelope)

    encryptor = enc_app.extensions["jwkservice"].encryptor
    key_set = encryptor.decrypt_key_set(envelope, enc_token["key"])
    assert isinstance(key_set, JWKSet)
    assert key_set.thumbprints() == [first, second]
    assert all("d" in k for k in key_set)

def test_encrypted_single_key(enc_app, enc_client, enc_token):
    kid = generate(enc_client, {"key_type": "oct", "bit_size": 256})
    headers = {"X-Encryption-Key": enc_token["hash"]}
    envelope = enc_client.get(f"/keys/{kid}", headers=headers).get_json()
    jwk = enc_app.extensions["jwkservice"].encryptor.decrypt_key_set(envelope, enc_token["key"])
    assert jwk["kid"] == kid and jwk["kty"] == "oct" and "k" in jwk

    # without a token the key is only available in public form, which oct keys lack
    assert enc_client.get(f"/keys/{kid}").status_code == 400

def test_revoked_and_public_keys_are_not_encrypted(enc_client, enc_token):
    kid = generate(enc_client)
    assert kids(enc_client.get("/keys/public")) == [kid]
    enc_client.post(f"/keys/{kid}/revoke")
    r = enc_client.get(f"/keys/{kid}", query_string={"encryption:key": enc_token["hash"]})
    jwk = r.get_json()["keys"][0]
    assert jwk["kid"] == kid and "d" not in jwk


# ---------- auth ----------
@pytest.fixture()
def auth_client():
    return create_app(AuthConfig).test_client()

def test_missing_auth_rejected(auth_client):
    assert auth_client.get("/keys/private").status_code == 401
    assert auth_client.post("/keys/generate", json={}, headers=basic("viewer", "wrong")).status_code == 401

def test_role_required(auth_client):
    r = auth_client.post("/keys/generate", json={"key_type": "EC"}, headers=basic("viewer", "sv"))
    assert r.status_code == 403 and r.get_json() == {"error": ["Insufficient role"]}
    kid = generate(auth_client, headers=basic("creator", "sc"))

    assert auth_client.get("/keys/private", headers=basic("creator", "sc")).status_code == 403
    assert kids(auth_client.get("/keys/private", headers=basic("viewer", "sv"))) == [kid]
    assert auth_client.get(f"/keys/{kid}", headers={"X-Client-Id": "viewer", "X-Client-Secret": "sv"}).status_code == 200
    assert auth_client.post(f"/keys/{kid}/revoke", headers=basic("viewer", "sv")).status_code == 403
    assert auth_client.post(f"/keys/{kid}/revoke", headers=basic("admin", "sa")).status_code == 204

def test_public_endpoints_skip_auth(auth_client):
    assert auth_client.get("/keys/public").status_code == 200
    assert auth_client.get("/health").status_code == 200
    assert auth_client.post("/encryption_keys/register", json={"secret": "x"}).status_code == 200
