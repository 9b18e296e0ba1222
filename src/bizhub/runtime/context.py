"""Process-wide configuration held in a context variable.

The loaded ``config.yaml`` is the default. Tests and one-off scripts can
layer partial overrides on top of it with :func:`with_context`.
"""

from contextlib import contextmanager
from contextvars import ContextVar, Token
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import BaseModel

from src.bizhub.runtime.config.config_data import AppConfig, ConfigData
from src.bizhub.runtime.config.config_template import load_templated_yaml
from src.bizhub.runtime.config.settings import EnvironmentVariables


@dataclass(frozen=True)
class AppContext:
    config: ConfigData


def load_startup_config() -> ConfigData:
    """Read the configuration file named by ``CONFIG_PATH``.

    A missing file is not an error; built-in defaults are used for the
    environment named by ``APP_ENVIRONMENT``.
    """
    env = EnvironmentVariables()
    path = Path(env.config_path)
    if path.exists():
        return load_templated_yaml(path, env_mode=env.environment)

    logger.warning("Configuration file {} not found; using built-in defaults", path)
    return ConfigData(app=AppConfig(environment=env.environment))


_current: ContextVar[AppContext] = ContextVar(
    "bizhub_app_context", default=AppContext(config=load_startup_config())
)


def get_context() -> AppContext:
    return _current.get()


def set_context(context: AppContext) -> Token[AppContext]:
    return _current.set(context)


def get_config() -> ConfigData:
    """The configuration in effect for the current context."""
    return _current.get().config


def set_config(config: ConfigData) -> None:
    """Replace the configuration for the current context and its children."""
    set_context(replace(get_context(), config=config))


def _explicit_values(model: BaseModel) -> dict[str, Any]:
    """Values assigned on ``model`` or on any model nested in it.

    Fields left at their defaults are omitted, so the result can be laid
    over another configuration without resetting it.
    """
    values: dict[str, Any] = {}
    for name in type(model).model_fields:
        value = getattr(model, name)
        if isinstance(value, BaseModel):
            nested = _explicit_values(value)
            if nested:
                values[name] = nested
            elif name in model.model_fields_set:
                values[name] = value.model_dump()
        elif name in model.model_fields_set:
            values[name] = value
    return values


def _deep_update(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in updates.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _deep_update(current, value)
        else:
            merged[key] = value
    return merged


def merge_config(base: ConfigData, override: ConfigData) -> ConfigData:
    """``base`` with every value explicitly set on ``override`` applied."""
    return ConfigData.model_validate(
        _deep_update(base.model_dump(), _explicit_values(override))
    )


@contextmanager
def with_context(config_override: ConfigData | None = None):
    """Temporarily apply a partial configuration override.

    Example:
        override = ConfigData()
        override.lockout.max_failed_attempts = 3
        with with_context(override):
            assert get_config().lockout.max_failed_attempts == 3
    """
    if config_override is None:
        yield
        return
    if not isinstance(config_override, ConfigData):
        raise ValueError(
            f"config_override must be ConfigData or None, got {type(config_override).__name__}"
        )

    token = set_context(
        replace(get_context(), config=merge_config(get_config(), config_override))
    )
    try:
        yield
    finally:
        _current.reset(token)
