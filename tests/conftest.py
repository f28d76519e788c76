import os

os.environ.setdefault("SQLHOST_ADMIN_PASSWORD", "test-admin-password")
os.environ.setdefault("SQLHOST_APP_PASSWORD", "test-app-password")

import pytest

import sqlhost_probe
import sqlhost_setup
from fakes import FakeClock, FakeEC2


@pytest.fixture
def fake_ec2(monkeypatch):
    client = FakeEC2()
    monkeypatch.setattr(sqlhost_setup, "ec2", lambda: client)
    return client


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(autouse=True)
def _no_log_file(monkeypatch):
    monkeypatch.setattr(sqlhost_setup, "LOG_TO_FILE", None)
    monkeypatch.setattr(sqlhost_probe, "LOG_TO_FILE", None)


@pytest.fixture
def settings():
    return sqlhost_setup.ProvisionSettings(
        tag_value="sql-dev",
        image_id="ami-0123456789",
        admin_password="admin-secret",
        app_password="app-secret",
        security_group_id="sg-0abc",
        instance_profile="sqlhost-profile",
        key_name="sqlhost-key",
        octopus_url="https://deploy.example.com",
        environment="dev",
        register_deployment=True,
    )
