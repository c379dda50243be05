from typing import Any

import toml

_config: dict[str, Any] | None = None


class ConfigNotFound(Exception):
    pass


def get_config() -> dict[str, Any]:
    if _config is None:
        raise ConfigNotFound("configuration has not been initialized")
    return _config


def init(config: dict[str, Any]) -> dict[str, Any]:
    global _config  # noqa: PLW0603
    _config = config
    return _config


def init_from_toml(configfile: str) -> dict[str, Any]:
    return init(toml.load(configfile))


def read(path: str, field: str, default: Any = None) -> Any:
    """
    Reads `field` from the section at `path` (slash separated, e.g.
    `team_rbac` or `central/auth`). Returns `default` when the field is not
    set, and raises ConfigNotFound when the section itself is missing and no
    default was given.
    """
    try:
        section = get_config()
        for t in path.split("/"):
            section = section[t]
    except (KeyError, TypeError) as e:
        if default is not None:
            return default
        raise ConfigNotFound(
            f"section {path} not found in config file: {e!s}"
        ) from None
    return section.get(field, default)
