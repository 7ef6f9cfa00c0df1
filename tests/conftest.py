"""Shared fixtures for the uloop SDK tests."""

import os

import pytest

from uloop_sdk.client.config import ClientConfig, CompileConfig, ConnectionConfig, PushConfig, RecoveryConfig


@pytest.fixture
def fast_config() -> ClientConfig:
    """Client config with timeouts short enough for tests."""
    return ClientConfig(
        connection=ConnectionConfig(
            connect_timeout=1.0,
            request_timeout=2.0,
            health_check_timeout=0.3,
            init_connect_timeout=1.0,
        ),
        recovery=RecoveryConfig(
            health_check_attempts=1, health_check_timeout=0.3, discovery_interval=0.05
        ),
        compile=CompileConfig(
            result_timeout=1.0, poll_interval=0.02, settle_timeout=0.3, lock_grace_period=0.02
        ),
        push=PushConfig(idle_timeout=5.0),
    )


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Environment with no uloop variables and an empty home directory."""
    for name in list(os.environ):
        if name.startswith("ULOOP_") or name in ("UNITY_TCP_PORT", "MCP_CLIENT_NAME"):
            monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    return tmp_path
