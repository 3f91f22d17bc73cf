"""
Env-file loading for the CLI.

Handles the bash-style ``key=value`` format used for per-environment
settings::

    db_dev_connection='Server=dev-sql;Database=Staging;Trusted_Connection=yes'
    db_uat_connection='Server=uat-sql;Database=Staging;Trusted_Connection=yes'
    DB_CONNECTION=db_{env}_connection   <- indirect reference, resolved using env
    BATCH_SIZE=100

Parsing (quotes, comments, ``export`` prefixes) is done by ``python-dotenv``;
this module only adds the indirect-reference resolution and the merge into
``os.environ`` that ``ExecutionConfig`` reads from.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from dotenv import dotenv_values

from sheet2sql.configs.exceptions import ConfigError

logger = logging.getLogger(__name__)


def parse_env_file(config_path: Path | str, env: str | None = None) -> dict[str, str]:
    """
    Parse an env file and resolve indirect references.

    Given ``env="dev"``, a variable like::

        DB_CONNECTION=db_dev_connection

    resolves to the value of ``db_dev_connection``.  The ``{env}`` placeholder
    style is also supported::

        DB_CONNECTION=db_{env}_connection  -> looks up db_dev_connection

    Args:
        config_path: Path of the env file.
        env:         Environment name substituted for ``{env}``.

    Returns:
        Dict of all variables with indirect references resolved.  Keys with
        no value (bare ``KEY`` lines) are dropped.

    Raises:
        ConfigError: If the file does not exist.
    """
    path = Path(config_path)
    if not path.is_file():
        raise ConfigError("Config file not found", key="config", value=str(path))

    raw = {k: v for k, v in dotenv_values(path, interpolate=False).items() if v is not None}

    resolved: dict[str, str] = {}
    for key, val in raw.items():
        candidate = val.replace("{env}", env) if env else val
        if candidate in raw:
            resolved[key] = raw[candidate]
        elif val in raw:
            resolved[key] = raw[val]
        else:
            resolved[key] = candidate

    return resolved


def apply_env_file(
    config_path: Path | str,
    env: str | None = None,
    override: bool = True,
) -> dict[str, str]:
    """
    Load ``config_path`` into ``os.environ``.

    Args:
        config_path: Path of the env file.
        env:         Environment name for indirect references.
        override:    If False, variables already set in the process
                     environment win over the file.

    Returns:
        The resolved variables (whether or not each was applied).
    """
    values = parse_env_file(config_path, env)
    applied = 0
    for key, val in values.items():
        if override or key not in os.environ:
            os.environ[key] = val
            applied += 1
    logger.info("Loaded %d config variable(s) from %s", applied, config_path)
    return values
