import importlib
import sys
import time

import pyotp
import pytest


def _reload_app_modules():
    for k in list(sys.modules.keys()):
        if k == "willtank" or k.startswith("willtank."):
            sys.modules.pop(k, None)


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite+pysqlite:///:memory:")
    monkeypatch.setenv("DB_AUTO_CREATE_TABLES", "true")
    monkeypatch.setenv("DB_REQUIRE_MIGRATIONS_UP_TO_DATE", "false")
    _reload_app_modules()
    app_factory = importlib.import_module("willtank.app_factory")

    from fastapi.testclient import TestClient

    with TestClient(app_factory.create_app()) as c:
        r = c.post("/api/register", json={"username": "carol@example.com", "password": "flow-password-1"})
        assert r.status_code == 200, r.text
        yield c


@pytest.fixture
def flow_mod():
    return importlib.import_module("willtank.client.two_factor_flow")


def _bad_code(secret):
    totp = pyotp.TOTP(secret)
    now = time.time()
    good = {totp.at(now + i * 30) for i in range(-3, 4)}
    return next(c for c in ("000000", "111111", "222222") if c not in good)


def test_happy_path_and_one_time_backup_code_display(client, flow_mod):
    flow = flow_mod.TwoFactorEnrollmentFlow(client)
    assert flow.refresh() is flow_mod.FlowState.DISABLED

    pending = flow.generate_secret()
    assert flow.state is flow_mod.FlowState.SECRET_GENERATED
    assert pending.qr_code.startswith("data:image/png;base64,")
    assert pending.otp_auth_url.startswith("otpauth://")

    codes = flow.verify_and_enable(pyotp.TOTP(pending.secret).now())
    assert flow.state is flow_mod.FlowState.ENABLED
    assert flow.pending is None
    assert len(codes) == 8

    assert flow.take_backup_codes() == codes
    assert flow.take_backup_codes() is None

    assert flow.refresh() is flow_mod.FlowState.ENABLED


def test_failed_verification_keeps_secret_for_retry(client, flow_mod):
    flow = flow_mod.TwoFactorEnrollmentFlow(client)
    flow.refresh()
    pending = flow.generate_secret()

    with pytest.raises(flow_mod.TwoFactorFlowError) as exc:
        flow.verify_and_enable(_bad_code(pending.secret))
    assert exc.value.status_code == 400
    assert flow.state is flow_mod.FlowState.SECRET_GENERATED
    assert flow.pending == pending
    assert flow.last_error == "Invalid verification code"

    flow.verify_and_enable(pyotp.TOTP(pending.secret).now())
    assert flow.state is flow_mod.FlowState.ENABLED
    assert flow.last_error is None


def test_discard_returns_to_disabled_without_enabling(client, flow_mod):
    flow = flow_mod.TwoFactorEnrollmentFlow(client)
    flow.refresh()
    flow.generate_secret()

    flow.discard_secret()
    assert flow.state is flow_mod.FlowState.DISABLED
    assert flow.pending is None
    assert flow.refresh() is flow_mod.FlowState.DISABLED


def test_disable_from_enabled(client, flow_mod):
    flow = flow_mod.TwoFactorEnrollmentFlow(client)
    flow.refresh()
    pending = flow.generate_secret()
    flow.verify_and_enable(pyotp.TOTP(pending.secret).now())

    with pytest.raises(flow_mod.TwoFactorFlowError) as exc:
        flow.disable("not-my-password")
    assert exc.value.status_code == 403
    assert flow.state is flow_mod.FlowState.ENABLED

    flow.disable("flow-password-1")
    assert flow.state is flow_mod.FlowState.DISABLED
    assert flow.refresh() is flow_mod.FlowState.DISABLED


def test_invalid_transitions(client, flow_mod):
    flow = flow_mod.TwoFactorEnrollmentFlow(client)
    flow.refresh()

    with pytest.raises(flow_mod.InvalidTransition):
        flow.verify_and_enable("123456")
    with pytest.raises(flow_mod.InvalidTransition):
        flow.discard_secret()
    with pytest.raises(flow_mod.InvalidTransition):
        flow.disable("flow-password-1")

    pending = flow.generate_secret()
    flow.verify_and_enable(pyotp.TOTP(pending.secret).now())
    with pytest.raises(flow_mod.InvalidTransition):
        flow.generate_secret()
