"""Shared fixtures for the Volt Language Client tests."""

import sys

import pytest

from tests.utils import FAKE_SERVER, ROOT
from vlsclient.config import ClientConfiguration, ServerOptions


@pytest.fixture
def make_configuration(tmp_path):
    """Build a configuration that launches the scripted fake server."""

    def make(*server_args: str, **overrides) -> ClientConfiguration:
        values = {
            "server": ServerOptions(
                command=sys.executable,
                args=[FAKE_SERVER, *server_args],
                env={"PYTHONPATH": ROOT},
            ),
            "workspace_root": str(tmp_path),
            "shutdown_timeout": 2.0,
            "terminate_grace_period": 2.0,
            "initialize_timeout": 10.0,
        }
        values.update(overrides)
        return ClientConfiguration(**values)

    return make
