import logging
from types import SimpleNamespace
from unittest import mock

import pytest

from secret_rotation import handler
from secret_rotation.errors import ConfigurationError, InvalidEvent, NotFound, UnsupportedPhase
from secret_rotation.rotation import RotationCoordinator

from conftest import CURRENT, PREVIOUS, SECRET_ARN

TOKEN = "e4bfd8c9-5b1a-4492-934d-2d7ac03ef6c5"


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    for key in ("PASSWORD_LENGTH", "DB_ENGINE", "LOG_LEVEL", "MASTER_SECRET_ARN", "SECRETS_MANAGER_ENDPOINT"):
        monkeypatch.delenv(key, raising=False)
    yield
    logging.getLogger().setLevel(logging.INFO)


@pytest.fixture
def use_fakes(monkeypatch, store, database):
    def build(settings):
        return RotationCoordinator(store, settings, session_factory=database.session)
    monkeypatch.setattr(handler, "build_coordinator", build)


def event(step):
    return {"Step": step, "SecretId": SECRET_ARN, "ClientRequestToken": TOKEN}


def test_handler_runs_all_steps(use_fakes, sm_client, database):
    context = SimpleNamespace(aws_request_id="req-1")

    for step in ("createSecret", "setSecret", "testSecret", "finishSecret"):
        response = handler.lambda_handler(event(step), context)
        assert response == {"statusCode": 200, "body": f"Rotation step {step} completed successfully"}

    stages = sm_client.stages(SECRET_ARN)
    assert stages[TOKEN] == [CURRENT]
    assert PREVIOUS in next(labels for vid, labels in stages.items() if vid != TOKEN)
    assert database.users["app"] == sm_client.value(SECRET_ARN, TOKEN)["password"]


def test_handler_reads_settings_from_environment(use_fakes, monkeypatch, sm_client):
    monkeypatch.setenv("PASSWORD_LENGTH", "40")
    handler.lambda_handler(event("createSecret"), None)
    assert len(sm_client.value(SECRET_ARN, TOKEN)["password"]) == 40


def test_handler_applies_log_level(use_fakes, monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "warning")
    handler.lambda_handler(event("createSecret"), None)
    assert logging.getLogger().level == logging.WARNING


def test_handler_rejects_missing_parameters(use_fakes):
    with pytest.raises(InvalidEvent):
        handler.lambda_handler({"Step": "createSecret", "SecretId": SECRET_ARN}, None)


def test_handler_rejects_unknown_step(use_fakes):
    with pytest.raises(UnsupportedPhase):
        handler.lambda_handler(event("rollbackSecret"), None)


def test_handler_rejects_bad_configuration(use_fakes, monkeypatch):
    monkeypatch.setenv("DB_ENGINE", "oracle")
    with pytest.raises(ConfigurationError):
        handler.lambda_handler(event("createSecret"), None)


def test_handler_propagates_step_failures(use_fakes):
    with pytest.raises(NotFound):
        handler.lambda_handler(event("setSecret"), None)


def test_handler_never_logs_passwords(use_fakes, sm_client, caplog):
    caplog.set_level(logging.DEBUG)
    for step in ("createSecret", "setSecret", "testSecret", "finishSecret"):
        handler.lambda_handler(event(step), None)

    new_password = sm_client.value(SECRET_ARN, TOKEN)["password"]
    assert all(new_password not in record.getMessage() for record in caplog.records)
    assert all("old1" not in record.getMessage() for record in caplog.records)


def test_build_coordinator_uses_endpoint_override(monkeypatch):
    client = mock.MagicMock()
    boto3_client = mock.MagicMock(return_value=client)
    monkeypatch.setattr(handler.boto3, "client", boto3_client)
    monkeypatch.setenv("SECRETS_MANAGER_ENDPOINT", "https://vpce.secretsmanager.example")

    coordinator = handler.build_coordinator(handler.RotationSettings.from_environ())

    boto3_client.assert_called_once_with("secretsmanager", endpoint_url="https://vpce.secretsmanager.example")
    assert coordinator.store.client is client
