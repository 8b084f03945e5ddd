"""Configuration loading: YAML file plus environment-variable overrides."""

from __future__ import annotations

import logging
import os
from typing import Optional

import yaml

from config_models import BackupConfig, DatabaseConfig, OpsConfig, TaricConfig

logger = logging.getLogger(__name__)

# Environment variables consulted for each target, first non-empty wins.
ENVIRONMENT_VARIABLES = {
    "local": ("DATABASE_URL", "DATABASE_URL_LOCAL"),
    "test": ("DATABASE_URL_TEST",),
    "demo": ("DATABASE_URL_DEMO", "DEMO_DATABASE_URL", "DATABASE_URL_TEST"),
    "prod": ("DATABASE_URL_PROD", "PROD_DATABASE_URL", "PRODUCTION_DATABASE_URL"),
}

ENVIRONMENT_ALIASES = {
    "production": "prod",
    "development": "local",
    "dev": "local",
    "staging": "demo",
}


class ConfigurationError(Exception):
    """Raised when required configuration is missing or malformed."""


def _truthy(value) -> bool:
    return str(value).lower() in ("true", "1", "yes")


def normalize_env_name(env: Optional[str]) -> Optional[str]:
    """Map user-facing environment names onto the canonical keys."""
    if not env:
        return None
    name = env.strip().lower()
    name = ENVIRONMENT_ALIASES.get(name, name)
    if name not in ENVIRONMENT_VARIABLES:
        raise ConfigurationError(
            f"Unknown environment '{env}'. "
            f"Expected one of: {', '.join(ENVIRONMENT_VARIABLES)}"
        )
    return name


def default_environment() -> str:
    """Pick the target when no --env is given.

    An explicit DATABASE_URL always means the local database. Without it,
    NODE_ENV / APP_ENV = production selects prod, anything else test.
    """
    if os.environ.get("DATABASE_URL"):
        return "local"
    runtime = os.environ.get("APP_ENV") or os.environ.get("NODE_ENV") or ""
    if runtime.lower() == "production":
        return "prod"
    return "test"


def load_config() -> OpsConfig:
    """Load configuration from *ops_config.yaml* with env-var overrides.

    Environment variables take precedence over ops_config.yaml values.
    The file location can be changed with ERP_OPS_CONFIG.
    """
    config_path = os.environ.get("ERP_OPS_CONFIG", "ops_config.yaml")
    raw: dict = {}
    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
    elif "ERP_OPS_CONFIG" in os.environ:
        logger.warning("Config file %s not found, using environment only", config_path)

    db_cfg = raw.get("database", {}) or {}
    backup_cfg = raw.get("backup", {}) or {}
    taric_cfg = raw.get("taric", {}) or {}

    urls = {}
    file_urls = db_cfg.get("urls", {}) or {}
    for env_name, variables in ENVIRONMENT_VARIABLES.items():
        url = next((os.environ[v] for v in variables if os.environ.get(v)), None)
        urls[env_name] = url or file_urls.get(env_name, "")

    return OpsConfig(
        database=DatabaseConfig(
            urls=urls,
            default_env=normalize_env_name(
                os.environ.get("ERP_OPS_ENV", db_cfg.get("default_env", ""))
            ) or default_environment(),
        ),
        backup=BackupConfig(
            backup_dir=os.environ.get("BACKUP_DIR", backup_cfg.get("dir", "./backups")),
            retention_days=int(
                os.environ.get("BACKUP_RETENTION_DAYS", backup_cfg.get("retention_days", 30))
            ),
            max_count=int(os.environ.get("BACKUP_MAX_COUNT", backup_cfg.get("max_count", 30))),
            record_in_database=_truthy(
                os.environ.get(
                    "BACKUP_RECORD_IN_DATABASE",
                    backup_cfg.get("record_in_database", True),
                )
            ),
        ),
        taric=TaricConfig(
            api_base=os.environ.get(
                "TARIC_API_BASE",
                taric_cfg.get("api_base", "https://www.trade-tariff.service.gov.uk/xi/api/v2"),
            ),
            request_delay=float(
                os.environ.get("TARIC_REQUEST_DELAY", taric_cfg.get("request_delay", 0.2))
            ),
            timeout=float(os.environ.get("TARIC_TIMEOUT", taric_cfg.get("timeout", 10))),
        ),
    )


def resolve_database_url(env: Optional[str] = None, config: Optional[OpsConfig] = None) -> str:
    """Return the connection string for *env*.

    Raises:
        ConfigurationError: If the environment has no connection string.
    """
    config = config or load_config()
    name = normalize_env_name(env) or config.database.default_env
    url = config.database.url_for(name)
    if not url:
        variables = " / ".join(ENVIRONMENT_VARIABLES[name])
        raise ConfigurationError(
            f"No database configured for '{name}'. Set {variables}."
        )
    return url
