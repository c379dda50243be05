import logging
import os
import signal
import sys
import time
import traceback
from collections.abc import Callable
from typing import Any

import click
import sentry_sdk
from prometheus_client import start_http_server
from sentry_sdk.integrations.logging import LoggingIntegration

from fleet_rbac.status import ExitCodes
from fleet_rbac.utils import config
from fleet_rbac.utils.metrics import (
    execution_counter,
    run_status,
    run_time,
)
from fleet_rbac.utils.runtime.environment import (
    FLEET_RBAC_CONFIG,
    init_env,
)
from fleet_rbac.utils.runtime.integration import (
    ReconcileIntegration,
    RunnerException,
)

PROMETHEUS_PORT = int(os.environ.get("PROMETHEUS_PORT", "9090"))


# Enable Sentry
if os.getenv("SENTRY_DSN"):
    match os.environ.get("SENTRY_EVENT_LEVEL", "CRITICAL").upper():
        case "CRITICAL":
            sentry_event_level = logging.CRITICAL
        case "ERROR":
            sentry_event_level = logging.ERROR
        case _:
            raise ValueError(
                "Invalid value for SENTRY_EVENT_LEVEL. Must be CRITICAL or ERROR."
            )

    sentry_sdk.init(
        os.environ["SENTRY_DSN"],
        integrations=[
            LoggingIntegration(event_level=sentry_event_level),
        ],
    )


def config_file(function: Callable) -> Callable:
    help_msg = "Path to configuration file in toml format."
    function = click.option(
        "--config",
        "configfile",
        required=True,
        default=os.environ.get(FLEET_RBAC_CONFIG),
        help=help_msg,
    )(function)
    return function


def log_level(function: Callable) -> Callable:
    function = click.option(
        "--log-level",
        help="log-level of the command. Defaults to INFO.",
        type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]),
    )(function)
    return function


def dry_run(function: Callable) -> Callable:
    help_msg = (
        "If `true`, it will only print the planned actions "
        "that would be performed, without executing them."
    )

    function = click.option("--dry-run/--no-dry-run", default=False, help=help_msg)(
        function
    )
    return function


def threaded(default: int = 10) -> Callable:
    def f(function: Callable) -> Callable:
        opt = "--thread-pool-size"
        msg = "number of threads to run in parallel."
        function = click.option(opt, type=int, default=default, help=msg)(function)
        return function

    return f


def namespace(function: Callable) -> Callable:
    function = click.option(
        "--namespace",
        help="only reconcile RoleBindings of this namespace. Defaults to all.",
        default=None,
    )(function)
    return function


def run_class_integration(
    integration: ReconcileIntegration,
    ctx: click.Context,
) -> None:
    execution_counter.labels(integration=integration.name).inc()
    start_time = time.monotonic()
    return_code = ExitCodes.SUCCESS
    try:
        integration.run(ctx.obj["dry_run"])
    except config.ConfigNotFound as e:
        sys.stderr.write(str(e) + "\n")
        return_code = ExitCodes.CONFIG_NOT_FOUND
    except RunnerException as e:
        sys.stderr.write(str(e) + "\n")
        return_code = ExitCodes.ERROR
    except Exception:
        traceback.print_exc(file=sys.stderr)
        return_code = ExitCodes.ERROR
    finally:
        run_time.labels(integration=integration.name).set(
            time.monotonic() - start_time
        )
        run_status.labels(integration=integration.name).set(return_code)
    if return_code != ExitCodes.SUCCESS:
        sys.exit(return_code)


@click.group()
@config_file
@dry_run
@log_level
@click.pass_context
def integration(
    ctx: click.Context,
    configfile: str,
    dry_run: bool,
    log_level: str | None,
) -> None:
    ctx.ensure_object(dict)

    init_env(
        log_level=log_level,
        config_file=configfile,
        dry_run=dry_run,
    )

    ctx.obj["dry_run"] = dry_run


@integration.command(short_help="Propagate team RoleBindings to all clusters once.")
@threaded()
@namespace
@click.pass_context
def team_rbac(ctx: click.Context, thread_pool_size: int, namespace: str | None) -> None:
    from fleet_rbac.team_rbac.integration import (
        TeamRBACIntegration,
        TeamRBACIntegrationParams,
    )

    run_class_integration(
        integration=TeamRBACIntegration(
            TeamRBACIntegrationParams(
                thread_pool_size=thread_pool_size,
                namespace=namespace,
            )
        ),
        ctx=ctx,
    )


@integration.command(
    short_help="Watch RoleBindings, Roles, Teams and Clusters and keep the "
    "team RBAC of all clusters in sync."
)
@threaded()
@namespace
@click.option(
    "--workers",
    type=int,
    default=4,
    help="number of RoleBindings reconciled in parallel.",
)
@click.option(
    "--resync-period",
    type=int,
    default=300,
    help="seconds after which every watch is restarted with a full list.",
)
@click.option(
    "--prometheus-port",
    type=int,
    default=PROMETHEUS_PORT,
    help="port to expose the prometheus metrics on.",
)
@click.pass_context
def team_rbac_controller(
    ctx: click.Context,
    thread_pool_size: int,
    namespace: str | None,
    workers: int,
    resync_period: int,
    prometheus_port: int,
) -> None:
    from fleet_rbac.team_rbac.controller import TeamRBACController
    from fleet_rbac.team_rbac.dependencies import Dependencies

    start_http_server(prometheus_port)
    dependencies = Dependencies.create(
        dry_run=ctx.obj["dry_run"], thread_pool_size=thread_pool_size
    )
    controller = TeamRBACController(
        dependencies,
        workers=workers,
        namespace=namespace,
        watch_timeout=resync_period,
    )

    def _shutdown(*_: Any) -> None:
        controller.stop()

    signal.signal(signal.SIGTERM, _shutdown)
    try:
        controller.run()
    finally:
        dependencies.cleanup()
