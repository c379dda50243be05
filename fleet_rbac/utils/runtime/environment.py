import logging
import os
import sys

from fleet_rbac.utils import config

FLEET_RBAC_CONFIG = "FLEET_RBAC_CONFIG"
FLEET_RBAC_LOG_LEVEL = "FLEET_RBAC_LOG_LEVEL"

LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def log_fmt(dry_run: bool | None = None) -> str:
    log_fmt = (
        "[%(asctime)s] [%(levelname)s] [DRY-RUN] "
        if dry_run
        else "[%(asctime)s] [%(levelname)s] "
    )

    log_fmt += "[%(threadName)s] [%(filename)s:%(funcName)s:%(lineno)d] - %(message)s"

    return log_fmt


def init_env(
    log_level: str | None = None,
    config_file: str | None = None,
    dry_run: bool | None = None,
) -> None:
    # store env configs in environment variables. this way worker threads
    # and child processes see the same settings and `init_env()` can be
    # called again without parameters.
    if log_level:
        os.environ[FLEET_RBAC_LOG_LEVEL] = log_level
    if config_file:
        os.environ[FLEET_RBAC_CONFIG] = config_file

    logging.basicConfig(
        format=log_fmt(dry_run=dry_run),
        datefmt=LOG_DATEFMT,
        level=getattr(logging, os.environ.get(FLEET_RBAC_LOG_LEVEL, "INFO")),
    )
    # the kubernetes client logs every request body on DEBUG
    logging.getLogger("kubernetes").setLevel(logging.WARNING)

    config_file = os.environ.get(FLEET_RBAC_CONFIG)
    if not config_file:
        logging.fatal("no config file for fleet-rbac-reconcile specified")
        sys.exit(1)
    config.init_from_toml(config_file)
