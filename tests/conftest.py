"""Shared fixtures: in-memory Secrets Manager client and database."""

import json
from contextlib import contextmanager

import pytest
from botocore.exceptions import ClientError

from secret_rotation.config import RotationSettings
from secret_rotation.errors import AuthenticationError, DatabaseConnectionError, StatementError
from secret_rotation.rotation import RotationCoordinator
from secret_rotation.store import CredentialStore

SECRET_ARN = "arn:aws:secretsmanager:us-east-1:123456789012:secret:db-app-AbCdEf"
INITIAL_VERSION = "00000000-0000-0000-0000-000000000001"

CURRENT = "AWSCURRENT"
PENDING = "AWSPENDING"
PREVIOUS = "AWSPREVIOUS"


def client_error(code, operation):
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


class FakeSecretsManagerClient:
    """Mimics the Secrets Manager label rules the rotation relies on."""

    def __init__(self):
        self.secrets = {}
        self.calls = []

    def add_secret(self, secret_id, value, version_id=INITIAL_VERSION):
        secret_string = value if isinstance(value, str) else json.dumps(value)
        self.secrets[secret_id] = {version_id: {"SecretString": secret_string, "stages": [CURRENT]}}

    def _versions(self, secret_id, operation):
        if secret_id not in self.secrets:
            raise client_error("ResourceNotFoundException", operation)
        return self.secrets[secret_id]

    def _holder(self, versions, stage):
        for version_id, version in versions.items():
            if stage in version["stages"]:
                return version_id
        return None

    def get_secret_value(self, SecretId, VersionId=None, VersionStage=None):
        self.calls.append(("get_secret_value", SecretId, VersionId, VersionStage))
        versions = self._versions(SecretId, "GetSecretValue")
        if VersionId is None:
            VersionId = self._holder(versions, VersionStage or CURRENT)
        version = versions.get(VersionId)
        if version is None or (VersionStage and VersionStage not in version["stages"]):
            raise client_error("ResourceNotFoundException", "GetSecretValue")
        return {
            "ARN": SecretId,
            "VersionId": VersionId,
            "SecretString": version["SecretString"],
            "VersionStages": list(version["stages"]),
        }

    def put_secret_value(self, SecretId, ClientRequestToken, SecretString, VersionStages):
        self.calls.append(("put_secret_value", SecretId, ClientRequestToken))
        versions = self._versions(SecretId, "PutSecretValue")
        existing = versions.get(ClientRequestToken)
        if existing is not None:
            if existing["SecretString"] != SecretString:
                raise client_error("ResourceExistsException", "PutSecretValue")
            return {"ARN": SecretId, "VersionId": ClientRequestToken, "VersionStages": list(existing["stages"])}

        for stage in VersionStages:
            for version in versions.values():
                if stage in version["stages"]:
                    version["stages"].remove(stage)
        versions[ClientRequestToken] = {"SecretString": SecretString, "stages": list(VersionStages)}
        return {"ARN": SecretId, "VersionId": ClientRequestToken, "VersionStages": list(VersionStages)}

    def describe_secret(self, SecretId):
        self.calls.append(("describe_secret", SecretId))
        versions = self._versions(SecretId, "DescribeSecret")
        return {
            "ARN": SecretId,
            "RotationEnabled": True,
            "VersionIdsToStages": {
                version_id: list(version["stages"]) for version_id, version in versions.items() if version["stages"]
            },
        }

    def update_secret_version_stage(self, SecretId, VersionStage, MoveToVersionId=None, RemoveFromVersionId=None):
        self.calls.append(("update_secret_version_stage", SecretId, VersionStage, MoveToVersionId, RemoveFromVersionId))
        versions = self._versions(SecretId, "UpdateSecretVersionStage")
        holder = self._holder(versions, VersionStage)

        if MoveToVersionId is not None:
            if MoveToVersionId not in versions:
                raise client_error("ResourceNotFoundException", "UpdateSecretVersionStage")
            if holder is not None and holder != MoveToVersionId:
                if RemoveFromVersionId != holder:
                    raise client_error("InvalidParameterException", "UpdateSecretVersionStage")
                versions[holder]["stages"].remove(VersionStage)
                if VersionStage == CURRENT:
                    previous = self._holder(versions, PREVIOUS)
                    if previous is not None:
                        versions[previous]["stages"].remove(PREVIOUS)
                    versions[holder]["stages"].append(PREVIOUS)
            if VersionStage not in versions[MoveToVersionId]["stages"]:
                versions[MoveToVersionId]["stages"].append(VersionStage)
        elif RemoveFromVersionId is not None:
            if holder != RemoveFromVersionId:
                raise client_error("InvalidParameterException", "UpdateSecretVersionStage")
            versions[RemoveFromVersionId]["stages"].remove(VersionStage)
        return {"ARN": SecretId}

    # Test helpers

    def stages(self, secret_id):
        return {vid: sorted(v["stages"]) for vid, v in self.secrets[secret_id].items() if v["stages"]}

    def value(self, secret_id, version_id):
        return json.loads(self.secrets[secret_id][version_id]["SecretString"])

    def snapshot(self, secret_id):
        return json.dumps(self.secrets[secret_id], sort_keys=True)


class FakeSession:
    def __init__(self, database, params):
        self.database = database
        self.params = params

    def set_password(self, username, password):
        if username not in self.database.users:
            raise StatementError(f"role \"{username}\" does not exist")
        self.database.users[username] = password

    def probe(self):
        self.database.probes += 1


class FakeDatabase:
    """Users and passwords; sessions authenticate against them."""

    def __init__(self, users):
        self.users = dict(users)
        self.reachable = True
        self.open_sessions = 0
        self.probes = 0
        self.logins = []

    @contextmanager
    def session(self, params):
        if not self.reachable:
            raise DatabaseConnectionError(f"Cannot connect to {params.address}")
        if self.users.get(params.username) != params.password:
            raise AuthenticationError(f"password authentication failed for user \"{params.username}\"")
        self.logins.append(params.username)
        self.open_sessions += 1
        try:
            yield FakeSession(self, params)
        finally:
            self.open_sessions -= 1


@pytest.fixture
def secret_value():
    return {"username": "app", "password": "old1", "host": "db", "port": 5432}


@pytest.fixture
def sm_client(secret_value):
    client = FakeSecretsManagerClient()
    client.add_secret(SECRET_ARN, secret_value)
    return client


@pytest.fixture
def store(sm_client):
    return CredentialStore(sm_client)


@pytest.fixture
def database():
    return FakeDatabase({"app": "old1", "master": "masterpw"})


@pytest.fixture
def settings():
    return RotationSettings()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def coordinator(store, settings, database, sleeps):
    return RotationCoordinator(store, settings, session_factory=database.session, sleep=sleeps.append)
