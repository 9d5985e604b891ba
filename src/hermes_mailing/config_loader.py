# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loader for dispatch workers.

Settings come from an INI file with environment variables as fallbacks, and
are validated into a :class:`DispatchSettings` model. Command-line options
are passed as ``overrides`` and win over everything else.

Precedence: overrides > INI file > ``HERMES_*`` environment > defaults.

Example:
    Configuration file format (hermes.ini)::

        [storage]
        dsn = postgresql://hermes:secret@db/mail
        table = hermes_mail

        [fields]
        retry = retry_times
        # Empty value disables server affinity
        affinity =

        [dispatch]
        server_id = 2
        sign_size = 100
        page_size = 50
        retry_times = 3

        [spam_rules]
        500 = 10
        1000 = 30

        [smtp]
        host = smtp.example.com
        port = 465

    Loading it::

        settings = load_settings("hermes.ini", overrides={"max_sent": 1000})
"""

from __future__ import annotations

import configparser
import os
import re
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from .logger import get_logger
from .models import DispatchSettings

logger = get_logger("Config")

ENV_PREFIX = "HERMES_"
DEFAULT_CONFIG_FILE = "hermes.ini"

# settings key, INI section, INI option, environment variable (without prefix)
_OPTIONS = [
    ("dsn", "storage", "dsn", "DSN"),
    ("table", "storage", "table", "TABLE"),
    ("busy_timeout", "storage", "busy_timeout", "BUSY_TIMEOUT"),
    ("server_id", "dispatch", "server_id", "SERVER_ID"),
    ("max_sent", "dispatch", "max_sent", "MAX_SENT"),
    ("sign_size", "dispatch", "sign_size", "SIGN_SIZE"),
    ("page_size", "dispatch", "page_size", "PAGE_SIZE"),
    ("retry_times", "dispatch", "retry_times", "RETRY_TIMES"),
    ("sign_unassigned", "dispatch", "sign_unassigned", "SIGN_UNASSIGNED"),
    ("renew_signature", "dispatch", "renew_signature", "RENEW_SIGNATURE"),
    ("test_mode", "dispatch", "test_mode", "TEST_MODE"),
    ("test_seed", "dispatch", "test_seed", "TEST_SEED"),
    ("lite_throttle", "dispatch", "lite_throttle", "LITE_THROTTLE"),
    ("dry_run_throttle", "dispatch", "dry_run_throttle", "DRY_RUN_THROTTLE"),
    ("log_level", "logging", "level", "LOG_LEVEL"),
    ("metrics_port", "metrics", "port", "METRICS_PORT"),
]

_SMTP_OPTIONS = ["host", "port", "user", "password", "use_tls", "timeout"]

# INI option in [fields] -> FieldMapping attribute
_FIELD_OPTIONS = {
    "id": "id_field",
    "signature": "signature_field",
    "status": "status_field",
    "retry": "retry_field",
    "affinity": "affinity_field",
    "sent_by": "sent_by_field",
}

_SPAM_RULE_RE = re.compile(r"^\s*(-?\d+)\s*[=:]\s*(\d+(?:\.\d+)?)\s*$")


class ConfigurationError(ValueError):
    """Invalid configuration value or file."""


def parse_spam_rules(value: str | Iterable[str] | Mapping[Any, Any] | None) -> dict[int, float]:
    """Parse spam rules given as ``"500=10,1000:30"`` or as a list of pairs.

    Raises:
        ConfigurationError: If a rule is not of the form ``M=N`` or ``M:N``.
    """
    if value is None:
        return {}
    if isinstance(value, Mapping):
        items = [f"{k}={v}" for k, v in value.items()]
    elif isinstance(value, str):
        items = [part for part in re.split(r"[,;]", value) if part.strip()]
    else:
        items = list(value)

    rules: dict[int, float] = {}
    for item in items:
        match = _SPAM_RULE_RE.match(str(item))
        if not match:
            raise ConfigurationError(
                f"Invalid spam rule '{item}': expected <sent count>=<pause seconds>"
            )
        rules[int(match.group(1))] = float(match.group(2))
    return rules


def load_settings(
    config_path: str | os.PathLike | None = None,
    overrides: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
) -> DispatchSettings:
    """Load worker settings from an INI file, the environment and overrides.

    The file path is ``config_path``, else ``HERMES_CONFIG``, else
    ``hermes.ini``. A missing file is not an error.

    Args:
        config_path: Path to the INI file.
        overrides: Values taken as-is (e.g. from command-line options);
            None values are ignored.
        environ: Environment mapping, defaults to ``os.environ``.

    Raises:
        ConfigurationError: If the file cannot be parsed or a value is invalid.
    """
    env = os.environ if environ is None else environ
    path = Path(config_path or env.get(f"{ENV_PREFIX}CONFIG") or DEFAULT_CONFIG_FILE).expanduser()

    parser = configparser.ConfigParser(interpolation=None)
    parser.optionxform = str  # column names are case sensitive
    try:
        loaded = parser.read(path)
    except configparser.Error as exc:
        raise ConfigurationError(f"Cannot parse {path}: {exc}") from exc
    if loaded:
        logger.debug("Loaded configuration from %s", path)

    def get(section: str, option: str, env_name: str | None = None) -> str | None:
        if parser.has_option(section, option):
            value = parser.get(section, option).strip()
        elif env_name is not None:
            value = (env.get(f"{ENV_PREFIX}{env_name}") or "").strip()
        else:
            return None
        return value or None

    data: dict[str, Any] = {}
    for key, section, option, env_name in _OPTIONS:
        value = get(section, option, env_name)
        if value is not None:
            data[key] = value

    smtp: dict[str, Any] = {}
    for option in _SMTP_OPTIONS:
        value = get("smtp", option, f"SMTP_{option.upper()}")
        if value is not None:
            smtp[option] = value
    if smtp:
        data["smtp"] = smtp

    fields: dict[str, Any] = {}
    for option, attr in _FIELD_OPTIONS.items():
        # An empty value is kept: it disables an optional column
        if parser.has_option("fields", option):
            fields[attr] = parser.get("fields", option)
        elif (value := env.get(f"{ENV_PREFIX}FIELD_{option.upper()}")) is not None:
            fields[attr] = value
    if fields:
        data["fields"] = fields

    if parser.has_section("message_fields"):
        data["message_fields"] = {
            column: attr.strip()
            for column, attr in parser.items("message_fields")
            if attr.strip()
        }

    if parser.has_section("spam_rules"):
        data["spam_rules"] = parse_spam_rules(
            [f"{m}={n}" for m, n in parser.items("spam_rules")]
        )
    elif env.get(f"{ENV_PREFIX}SPAM_RULES"):
        data["spam_rules"] = parse_spam_rules(env[f"{ENV_PREFIX}SPAM_RULES"])

    for key, value in (overrides or {}).items():
        if value is not None:
            data[key] = value

    if isinstance(data.get("dsn"), str) and data["dsn"].startswith("~"):
        data["dsn"] = os.path.expanduser(data["dsn"])

    try:
        return DispatchSettings.model_validate(data)
    except ValidationError as exc:
        raise ConfigurationError(f"Invalid configuration: {exc}") from exc


__all__ = ["ConfigurationError", "load_settings", "parse_spam_rules"]
