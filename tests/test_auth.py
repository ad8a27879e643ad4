import json

import pytest
from botocore.exceptions import ClientError

from jwkservice.auth import (
    AWSSecretsAuthRepository, ClientCredentials, InMemoryAuthRepository, Principal,
    _parse_basic_auth, build_auth_repository,
)
from jwkservice.exceptions import ConfigurationError


class FakeSecretsManager:
    def __init__(self, secrets):
        self.secrets = secrets
        self.requested = []

    def get_secret_value(self, SecretId):
        self.requested.append(SecretId)
        if SecretId not in self.secrets:
            raise ClientError({"Error": {"Code": "ResourceNotFoundException"}}, "GetSecretValue")
        return {"SecretString": self.secrets[SecretId]}


def test_in_memory_authenticate():
    repo = InMemoryAuthRepository({"c1": {"client_secret": "s1", "roles": ["view", "bogus"]}})
    assert repo.authenticate("c1", "s1") == Principal("c1", frozenset({"view"}))
    assert repo.authenticate("c1", "nope") is None
    assert repo.authenticate("c2", "s1") is None

def test_aws_authenticate():
    sm = FakeSecretsManager({
        "jwks/clients/c1": json.dumps({"client_secret": "s1", "roles": ["rotate"]}),
        "jwks/clients/broken": "not json",
    })
    repo = AWSSecretsAuthRepository(sm, "jwks/clients/")
    assert repo.authenticate("c1", "s1") == Principal("c1", frozenset({"rotate"}))
    assert sm.requested == ["jwks/clients/c1"]
    assert repo.authenticate("c1", "bad") is None
    assert repo.authenticate("missing", "s1") is None
    assert repo.authenticate("broken", "s1") is None

def test_principal_roles():
    viewer = Principal("v", frozenset({"view"}))
    assert viewer.may("view") and not viewer.may("rotate", "revoke")
    assert Principal("a", frozenset({"admin"})).may("delete")
    assert not Principal("n").may("view")

def test_build_auth_repository():
    assert build_auth_repository({"AUTH_BACKEND": "none"}) is None
    repo = build_auth_repository({"AUTH_BACKEND": "inmemory", "INMEM_ACCOUNTS": {}})
    assert isinstance(repo, InMemoryAuthRepository)
    with pytest.raises(ConfigurationError):
        build_auth_repository({"AUTH_BACKEND": "ldap"})

@pytest.mark.parametrize("header,expected", [
    ("Basic YzE6czE6eA==", ClientCredentials("c1", "s1:x")),
    ("Bearer abc", None),
    ("Basic !!!", None),
    ("Basic", None),
])
def test_parse_basic_auth(header, expected):
    assert _parse_basic_auth(header) == expected
