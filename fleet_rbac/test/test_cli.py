from pathlib import Path
from unittest.mock import MagicMock

import pytest
from click.testing import CliRunner
from pytest_mock import MockerFixture

import fleet_rbac.cli as fleet_rbac_cli
from fleet_rbac.status import ExitCodes
from fleet_rbac.team_rbac.integration import TeamRBACIntegration
from fleet_rbac.utils import config
from fleet_rbac.utils.runtime.environment import FLEET_RBAC_CONFIG
from fleet_rbac.utils.runtime.integration import RunnerException


@pytest.fixture
def config_file(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> str:
    # init_env exports the config path and loads it into the global config
    monkeypatch.setenv(FLEET_RBAC_CONFIG, "")
    monkeypatch.setattr(config, "_config", None)
    path = tmp_path / "config.toml"
    path.write_text('[central]\nkubeconfig = "/etc/kubeconfig"\n', encoding="utf-8")
    return str(path)


@pytest.fixture
def run(mocker: MockerFixture) -> MagicMock:
    return mocker.patch.object(TeamRBACIntegration, "run", autospec=True)


def test_config_is_required() -> None:
    runner = CliRunner()
    result = runner.invoke(fleet_rbac_cli.integration, "--help")
    assert result.exit_code == 0


def test_team_rbac(config_file: str, run: MagicMock) -> None:
    runner = CliRunner()
    result = runner.invoke(
        fleet_rbac_cli.integration,
        [
            "--config",
            config_file,
            "--dry-run",
            "team-rbac",
            "--thread-pool-size",
            "3",
            "--namespace",
            "greenhouse",
        ],
    )

    assert result.exit_code == ExitCodes.SUCCESS
    [integration, dry_run] = run.call_args.args
    assert dry_run is True
    assert integration.params.thread_pool_size == 3
    assert integration.params.namespace == "greenhouse"
    assert config.read("central", "kubeconfig") == "/etc/kubeconfig"


@pytest.mark.parametrize(
    "error,exit_code",
    [
        (RunnerException("2 RoleBindings failed"), ExitCodes.ERROR),
        (
            config.ConfigNotFound("section central not found"),
            ExitCodes.CONFIG_NOT_FOUND,
        ),
        (ValueError("boom"), ExitCodes.ERROR),
    ],
)
def test_team_rbac_failure(
    config_file: str, run: MagicMock, error: Exception, exit_code: int
) -> None:
    run.side_effect = error

    runner = CliRunner()
    result = runner.invoke(
        fleet_rbac_cli.integration, ["--config", config_file, "team-rbac"]
    )

    assert result.exit_code == exit_code


def test_team_rbac_controller(config_file: str, mocker: MockerFixture) -> None:
    start_http_server = mocker.patch.object(fleet_rbac_cli, "start_http_server")
    mocker.patch.object(fleet_rbac_cli.signal, "signal")
    create = mocker.patch("fleet_rbac.team_rbac.dependencies.Dependencies.create")
    controller_class = mocker.patch(
        "fleet_rbac.team_rbac.controller.TeamRBACController", autospec=True
    )

    runner = CliRunner()
    result = runner.invoke(
        fleet_rbac_cli.integration,
        [
            "--config",
            config_file,
            "team-rbac-controller",
            "--workers",
            "2",
            "--resync-period",
            "60",
            "--prometheus-port",
            "9999",
        ],
    )

    assert result.exit_code == 0
    start_http_server.assert_called_once_with(9999)
    create.assert_called_once_with(dry_run=False, thread_pool_size=10)
    controller_class.assert_called_once_with(
        create.return_value, workers=2, namespace=None, watch_timeout=60
    )
    controller_class.return_value.run.assert_called_once_with()
    create.return_value.cleanup.assert_called_once_with()
