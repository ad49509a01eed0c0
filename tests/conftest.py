"""
Pytest configuration and shared fixtures
"""
import os
import sys
from unittest.mock import MagicMock

import pytest

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from loader_agent.config import AgentConfig  # noqa: E402
from loader_agent.paths import build_paths, ensure_dirs  # noqa: E402


@pytest.fixture
def mock_env(monkeypatch):
    """Set up mock environment variables"""
    env_vars = {
        'MQTT_HOST': 'test.mqtt.local',
        'MQTT_PORT': '1883',
        'MQTT_USERNAME': 'loader',
        'MQTT_PASSWORD': 'test-password',
    }

    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)

    return env_vars


@pytest.fixture
def make_config():
    """Build an AgentConfig with test-friendly defaults; override any field by keyword."""
    def _make(**overrides):
        values = dict(
            mqtt_host='localhost',
            mqtt_port=1883,
            mqtt_username=None,
            mqtt_password=None,
            agent_id='loader',
            agent_version='1.0.0',
            config_root='app',
            fetch_timeout_s=0.5,
            retry_interval_s=0.0,
            download_timeout_s=5.0,
            download_retries=0,
            download_backoff_s=0.0,
            artifact_extension='.apk',
            provider_authority='loader_agent.provider',
            install_capability='content',
            halt_on_incomplete=True,
        )
        values.update(overrides)
        return AgentConfig(**values)

    return _make


@pytest.fixture
def agent_paths(tmp_path):
    paths = build_paths(tmp_path / 'agent_base')
    ensure_dirs(paths)
    return paths


@pytest.fixture
def fake_paho_client(monkeypatch):
    """
    Patch paho.mqtt.client.Client to return a controllable fake.
    """
    fake = MagicMock()
    fake.is_connected.return_value = True
    fake.publish.return_value = (0, 1)  # (rc, mid)

    def _ctor(*args, **kwargs):
        return fake

    monkeypatch.setattr("paho.mqtt.client.Client", _ctor)
    return fake
