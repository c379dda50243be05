from typing import Any

import pytest

from fleet_rbac.test.fixtures import FakeKubeClient
from fleet_rbac.utils import config


@pytest.fixture
def central() -> FakeKubeClient:
    return FakeKubeClient("central")


@pytest.fixture
def config_data() -> dict[str, Any]:
    return {
        "central": {"kubeconfig": "/path/to/kubeconfig"},
        "team_rbac": {"request_timeout": 30, "client_max_age": 600},
    }


@pytest.fixture
def initialized_config(
    monkeypatch: pytest.MonkeyPatch, config_data: dict[str, Any]
) -> dict[str, Any]:
    monkeypatch.setattr(config, "_config", config_data)
    return config_data
