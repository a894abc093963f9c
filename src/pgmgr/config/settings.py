"""
Configuration loading for pgmgr.

A configuration is resolved by running a fixed pipeline of stages, each of
which takes a :class:`~pgmgr.config.configuration.Config` and returns a new
one without touching its input:

1. :func:`load_file` - values from ``.pgmgr.json`` (or a YAML file)
2. :func:`apply_postgres_env` - the standard libpq ``PG*`` variables
3. :func:`apply_defaults` - fill values left empty or zero
4. :func:`apply_arguments` - explicit overrides (command line, ``PGMGR_*``)
5. :func:`apply_url` - connection parameters from a connection URL
6. :func:`validate` - reject invalid combinations

:func:`load_config` runs all of them in that order.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Mapping, Optional

import yaml
from psycopg import ProgrammingError
from psycopg.conninfo import conninfo_to_dict

from pgmgr.config.configuration import (
    DEFAULT_LOCK_TIMEOUT,
    DEFAULT_MAX_RETRIES,
    DEFAULT_RETRY_DELAY,
    DEFAULT_STATEMENT_TIMEOUT,
    Config,
)
from pgmgr.config.logging_config import get_logger
from pgmgr.migrations.exceptions import ConfigValidationError

log = get_logger(__name__)

DEFAULT_CONFIG_FILE = ".pgmgr.json"

COLUMN_TYPES = ("integer", "string")
FORMATS = ("unix", "datetime")

# libpq environment variable -> Config field
POSTGRES_ENV_VARS = {
    "PGUSER": "username",
    "PGPASSWORD": "password",
    "PGDATABASE": "database",
    "PGHOST": "host",
    "PGPORT": "port",
    "PGSSLMODE": "sslmode",
}

# Config fields that may be overridden by explicit arguments
ARGUMENT_FIELDS = (
    "username",
    "password",
    "database",
    "host",
    "port",
    "url",
    "sslmode",
    "dump_file",
    "migration_folder",
    "migration_table",
    "column_type",
    "format",
    "seed_tables",
)


def _hyphenate_keys(data: Any) -> Any:
    if isinstance(data, dict):
        return {str(k).replace("_", "-"): _hyphenate_keys(v) for k, v in data.items()}
    return data


def _deep_merge(base: dict[str, Any], overlay: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _read_config_file(path: Path) -> dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix in (".yaml", ".yml"):
            data = yaml.safe_load(text) or {}
        else:
            data = json.loads(text) if text.strip() else {}
    except (json.JSONDecodeError, yaml.YAMLError) as e:
        raise ConfigValidationError(f"Could not parse config file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigValidationError(f"Config file {path} must contain a mapping at the top level")
    return data


def load_file(config: Config, path: str | os.PathLike[str] | None) -> Config:
    """Overlay the values found in a config file.

    A missing file is not an error; pgmgr can run from flags and environment
    variables alone.
    """
    if not path:
        return config

    config_path = Path(path)
    if not config_path.is_file():
        log.debug(f"Config file {config_path} not found, skipping")
        return config

    data = _hyphenate_keys(_read_config_file(config_path))
    merged = _deep_merge(config.model_dump(by_alias=True), data)
    try:
        return Config.model_validate(merged)
    except ValueError as e:
        raise ConfigValidationError(f"Invalid config file {config_path}: {e}") from e


def apply_postgres_env(config: Config, environ: Mapping[str, str]) -> Config:
    """Overlay the libpq ``PG*`` environment variables that are set and non-empty."""
    updates: dict[str, Any] = {}
    for var, field in POSTGRES_ENV_VARS.items():
        value = environ.get(var)
        if not value:
            continue
        if field == "port":
            try:
                updates[field] = int(value)
            except ValueError as e:
                raise ConfigValidationError(f"{var} must be an integer, got {value!r}") from e
        else:
            updates[field] = value
    return config.model_copy(update=updates)


def apply_defaults(config: Config) -> Config:
    """Replace empty and zero values with defaults.

    A dump file configured with a ``.gz`` suffix turns compression on; the
    suffix itself is kept out of ``dump_file`` and re-added by
    :meth:`Config.dump_path`.
    """
    updates: dict[str, Any] = {}
    if not config.port:
        updates["port"] = 5432
    if not config.host:
        updates["host"] = "localhost"
    if not config.format:
        updates["format"] = "unix"
    if not config.column_type:
        updates["column_type"] = "integer"
    if not config.migration_table:
        updates["migration_table"] = "schema_migrations"
    if not config.sslmode:
        updates["sslmode"] = "disable"

    dump_file = config.dump_file or "dump.sql"
    dump_config = config.dump_config
    if dump_file.endswith(".gz"):
        dump_file = dump_file[: -len(".gz")]
        dump_config = dump_config.model_copy(update={"compress": True})
    updates["dump_file"] = dump_file
    updates["dump_config"] = dump_config

    lock = config.lock_config
    updates["lock_config"] = lock.model_copy(
        update={
            "statement_timeout": lock.statement_timeout or DEFAULT_STATEMENT_TIMEOUT,
            "lock_timeout": lock.lock_timeout or DEFAULT_LOCK_TIMEOUT,
            "max_retries": lock.max_retries or DEFAULT_MAX_RETRIES,
            "retry_delay": lock.retry_delay or DEFAULT_RETRY_DELAY,
        }
    )
    return config.model_copy(update=updates)


def _split_list(values: Any) -> list[str]:
    if isinstance(values, str):
        values = [values]
    items: list[str] = []
    for value in values:
        items.extend(part.strip() for part in str(value).split(",") if part.strip())
    return items


def apply_arguments(config: Config, arguments: Mapping[str, Any]) -> Config:
    """Overlay explicitly passed values.

    Only known fields with a non-empty value are applied, so an unset flag
    never clobbers a value coming from an earlier stage. ``seed_tables``
    accepts repeated values as well as comma-separated lists.
    """
    updates: dict[str, Any] = {}
    for field in ARGUMENT_FIELDS:
        value = arguments.get(field)
        if value is None or value == "" or value == 0 or value == () or value == []:
            continue
        if field == "seed_tables":
            value = _split_list(value)
            if not value:
                continue
        elif field == "port":
            value = int(value)
        updates[field] = value
    return config.model_copy(update=updates)


def apply_url(config: Config) -> Config:
    """Replace the connection parameters with those encoded in ``config.url``."""
    if not config.url:
        return config

    try:
        params = conninfo_to_dict(config.url)
    except ProgrammingError as e:
        raise ConfigValidationError(f"Could not parse connection URL: {e}") from e

    updates: dict[str, Any] = {}
    if params.get("user"):
        updates["username"] = params["user"]
    if params.get("password"):
        updates["password"] = params["password"]
    if params.get("host"):
        updates["host"] = params["host"]
    if params.get("port"):
        updates["port"] = int(params["port"])
    if params.get("dbname"):
        updates["database"] = params["dbname"]
    if params.get("sslmode"):
        updates["sslmode"] = params["sslmode"]
    return config.model_copy(update=updates)


def validate(config: Config) -> Config:
    """Check value ranges and combinations; returns the config unchanged."""
    if config.column_type not in COLUMN_TYPES:
        raise ConfigValidationError('column-type must be "integer" or "string"')
    if config.format not in FORMATS:
        raise ConfigValidationError('format must be "unix" or "datetime"')
    if config.format == "datetime" and config.column_type != "string":
        raise ConfigValidationError('column-type must be "string" if format is "datetime"')

    lock = config.lock_config
    if lock.lock_timeout >= lock.statement_timeout:
        log.warning(
            f"lock-timeout ({lock.lock_timeout} ms) should be lower than "
            f"statement-timeout ({lock.statement_timeout} ms)"
        )
    return config


def load_config(
    config_file: str | os.PathLike[str] | None = DEFAULT_CONFIG_FILE,
    arguments: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
    base: Optional[Config] = None,
) -> Config:
    """Resolve a configuration from all sources.

    Args:
        config_file: Path of the JSON/YAML config file; missing files are skipped
        arguments: Explicit overrides keyed by Config field name
        environ: Environment to read ``PG*`` variables from (defaults to ``os.environ``)
        base: Starting configuration (defaults to ``Config()``)

    Returns:
        The validated configuration

    Raises:
        ConfigValidationError: If any stage rejects its input
    """
    config = base if base is not None else Config()
    config = load_file(config, config_file)
    config = apply_postgres_env(config, os.environ if environ is None else environ)
    config = apply_defaults(config)
    config = apply_arguments(config, arguments or {})
    config = apply_url(config)
    return validate(config)
