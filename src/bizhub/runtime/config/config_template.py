"""Loading of the templated ``config.yaml``.

Placeholders are resolved against the process environment before the YAML
is parsed:

- ``${NAME}`` must be set
- ``${NAME:-fallback}`` uses ``fallback`` when unset
- ``${NAME:?message}`` must be set and fails with ``message`` otherwise

For the active environment ``<ENV>_NAME`` takes precedence over ``NAME``,
so ``PRODUCTION_REDIS_URL`` wins over ``REDIS_URL`` in production.
"""

import os
import re
from pathlib import Path

import yaml
from loguru import logger
from pydantic import ValidationError

from src.bizhub.runtime.config.config_data import ConfigData

_PLACEHOLDER = re.compile(r"\$\{([^}]+)\}")


def _resolve(expression: str) -> str:
    if ":-" in expression:
        name, fallback = expression.split(":-", 1)
        return os.getenv(name, fallback)

    if ":?" in expression:
        name, message = expression.split(":?", 1)
        detail = message
    else:
        name, detail = expression, "not set"

    value = os.getenv(name)
    if value is None:
        raise ValueError(f"Required environment variable {name}: {detail}")
    return value


def substitute_env_vars(text: str) -> str:
    """Replace every ``${...}`` placeholder in ``text``.

    Raises:
        ValueError: If a required variable is unset
    """
    return _PLACEHOLDER.sub(lambda match: _resolve(match.group(1)), text)


def _promote_environment_overrides(env_mode: str) -> None:
    prefix = f"{env_mode.upper()}_"
    promoted = {
        name[len(prefix):]: value
        for name, value in os.environ.items()
        if name.startswith(prefix)
    }
    if promoted:
        logger.info("Applying {} overrides: {}", env_mode, sorted(promoted))
    os.environ.update(promoted)


def load_templated_yaml(file_path: Path, env_mode: str = "development") -> ConfigData:
    """Build :class:`ConfigData` from a templated YAML file.

    Args:
        file_path: Path to the YAML file; settings live under its ``config`` key
        env_mode: Active environment; overrides ``app.environment``

    Raises:
        ValueError: On a missing required variable, unparsable YAML, a
            document that does not validate, or a production config without
            a session signing secret
        FileNotFoundError: If ``file_path`` does not exist
    """
    raw = Path(file_path).read_text()
    logger.info("Loading configuration for environment: {}", env_mode)

    _promote_environment_overrides(env_mode)
    try:
        document = yaml.safe_load(substitute_env_vars(raw))
    except yaml.YAMLError as e:
        raise ValueError(f"Error parsing YAML: {e}") from e
    if not document:
        raise ValueError(f"Configuration file {file_path} is empty")

    try:
        config = ConfigData.model_validate(document.get("config") or {})
    except ValidationError as e:
        raise ValueError(f"Invalid configuration: {e}") from e

    config.app.environment = env_mode
    if env_mode == "production" and not config.session.signing_secret:
        raise ValueError("session.signing_secret must be set in production")
    return config
