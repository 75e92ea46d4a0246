"""Tests for MFA metrics and the Prometheus admin app (separate port + basic auth)."""

import base64

import pytest
from prometheus_client import REGISTRY
from starlette.testclient import TestClient

from app.config import settings as real_settings
from app.core.metrics import (
    create_metrics_app,
    track_email_otp_sent,
    track_mfa_setup,
    track_mfa_verification,
)


def _basic_auth_header(username: str, password: str) -> str:
    credentials = base64.b64encode(f"{username}:{password}".encode()).decode()
    return f"Basic {credentials}"


_USERNAME = real_settings.METRICS_USERNAME
_PASSWORD = real_settings.METRICS_PASSWORD


@pytest.fixture(scope="module")
def metrics_client():
    """Starlette test client for the metrics admin ASGI app."""
    return TestClient(create_metrics_app(), raise_server_exceptions=True)


def _sample(name: str, **labels) -> float:
    return REGISTRY.get_sample_value(name, labels) or 0.0


@pytest.mark.unit
class TestMetricsAdminApp:
    def test_no_auth_header_returns_401(self, metrics_client):
        response = metrics_client.get("/metrics")
        assert response.status_code == 401
        assert "WWW-Authenticate" in response.headers

    def test_wrong_password_returns_401(self, metrics_client):
        response = metrics_client.get(
            "/metrics", headers={"Authorization": _basic_auth_header(_USERNAME, "wrongpass")}
        )
        assert response.status_code == 401

    def test_bearer_scheme_returns_401(self, metrics_client):
        response = metrics_client.get("/metrics", headers={"Authorization": "Bearer sometoken"})
        assert response.status_code == 401

    def test_malformed_base64_returns_401(self, metrics_client):
        response = metrics_client.get("/metrics", headers={"Authorization": "Basic !!!not_valid_base64!!!"})
        assert response.status_code == 401

    def test_correct_credentials_expose_mfa_counters(self, metrics_client):
        track_mfa_setup("authenticator", "started")

        response = metrics_client.get(
            "/metrics", headers={"Authorization": _basic_auth_header(_USERNAME, _PASSWORD)}
        )

        assert response.status_code == 200
        assert "text/plain" in response.headers.get("content-type", "")
        assert "mfa_setup_total" in response.text


@pytest.mark.unit
class TestMfaCounters:
    def test_setup_counter_labelled_by_method_and_status(self):
        before = _sample("mfa_setup_total", method="email_otp", status="activated")
        track_mfa_setup("email_otp", "activated")
        assert _sample("mfa_setup_total", method="email_otp", status="activated") == before + 1

    def test_verification_counter(self):
        before = _sample("mfa_verification_total", method="backup", status="invalid")
        track_mfa_verification("backup", "invalid")
        assert _sample("mfa_verification_total", method="backup", status="invalid") == before + 1

    def test_email_otp_counter(self):
        before = _sample("mfa_email_otp_sent_total", purpose="login")
        track_email_otp_sent("login")
        assert _sample("mfa_email_otp_sent_total", purpose="login") == before + 1
