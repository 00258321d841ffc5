"""
Control-plane settings.
Precedence: defaults < YAML file named by STOREPLANE_CONFIG_PATH < environment variables.
Malformed numeric values fall back to the default instead of failing startup.
"""
import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Mapping, Optional

logger = logging.getLogger("storeplane.config")

CONFIG_PATH_ENV = "STOREPLANE_CONFIG_PATH"


@dataclass
class Settings:
    database_url: str = "sqlite://"
    max_stores_per_user: int = 5
    creation_cooldown_ms: int = 300000
    default_engine: str = "woocommerce"
    provisioning_max_concurrent: int = 3
    provisioning_timeout_ms: int = 600000
    provisioning_poll_interval_ms: int = 3000
    max_retry_count: int = 3
    step_retries: int = 2
    retry_base_delay_ms: int = 2000
    cb_failure_threshold: int = 5
    cb_reset_timeout_ms: int = 30000
    cb_half_open_max: int = 1
    session_store_url: str = ""
    session_ttl_sec: int = 86400
    bcrypt_rounds: int = 12
    provisioner: str = "simulated"
    provisioner_url: str = ""
    store_domain_suffix: str = ".localhost"
    audit_mirror_path: str = ""
    login_rate_limit_max: int = 10
    login_rate_limit_window_sec: int = 900
    register_rate_limit_max: int = 5
    register_rate_limit_window_sec: int = 3600
    rate_limit_enabled: bool = True
    api_prefix: str = ""
    health_interval_sec: float = 0.0
    recover_on_start: bool = True
    log_level: str = "INFO"
    apm_log: bool = False
    host: str = "0.0.0.0"
    port: int = 3001
    extra: Dict[str, Any] = field(default_factory=dict)


# env var -> field
ENV_MAP = {
    "DATABASE_URL": "database_url",
    "MAX_STORES_PER_USER": "max_stores_per_user",
    "STORE_CREATION_COOLDOWN_MS": "creation_cooldown_ms",
    "DEFAULT_ENGINE": "default_engine",
    "PROVISIONING_MAX_CONCURRENT": "provisioning_max_concurrent",
    "PROVISIONING_TIMEOUT_MS": "provisioning_timeout_ms",
    "PROVISIONING_POLL_INTERVAL_MS": "provisioning_poll_interval_ms",
    "PROVISIONING_MAX_RETRIES": "max_retry_count",
    "PROVISIONING_STEP_RETRIES": "step_retries",
    "PROVISIONING_RETRY_BASE_DELAY_MS": "retry_base_delay_ms",
    "CB_FAILURE_THRESHOLD": "cb_failure_threshold",
    "CB_RESET_TIMEOUT_MS": "cb_reset_timeout_ms",
    "CB_HALF_OPEN_MAX": "cb_half_open_max",
    "SESSION_STORE_URL": "session_store_url",
    "SESSION_TTL_SEC": "session_ttl_sec",
    "BCRYPT_ROUNDS": "bcrypt_rounds",
    "PROVISIONER": "provisioner",
    "PROVISIONER_URL": "provisioner_url",
    "STORE_DOMAIN_SUFFIX": "store_domain_suffix",
    "AUDIT_MIRROR_PATH": "audit_mirror_path",
    "LOGIN_RATE_LIMIT_MAX": "login_rate_limit_max",
    "LOGIN_RATE_LIMIT_WINDOW_SEC": "login_rate_limit_window_sec",
    "REGISTER_RATE_LIMIT_MAX": "register_rate_limit_max",
    "REGISTER_RATE_LIMIT_WINDOW_SEC": "register_rate_limit_window_sec",
    "RATE_LIMIT_ENABLED": "rate_limit_enabled",
    "API_PREFIX": "api_prefix",
    "HEALTH_INTERVAL_SEC": "health_interval_sec",
    "RECOVER_ON_START": "recover_on_start",
    "LOG_LEVEL": "log_level",
    "APM_LOG": "apm_log",
    "HOST": "host",
    "PORT": "port",
}

_TYPES = {f.name: f.type for f in fields(Settings)}
_DEFAULTS = Settings()


def _coerce(name: str, raw: Any) -> Any:
    """Convert a raw file/env value to the field's type; invalid values keep the default."""
    default = getattr(_DEFAULTS, name)
    if isinstance(default, bool):
        if isinstance(raw, bool):
            return raw
        return str(raw).strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        try:
            return int(raw)
        except (TypeError, ValueError):
            logger.warning("invalid integer for %s: %r, using default %s", name, raw, default)
            return default
    if isinstance(default, float):
        try:
            return float(raw)
        except (TypeError, ValueError):
            logger.warning("invalid number for %s: %r, using default %s", name, raw, default)
            return default
    return "" if raw is None else str(raw)


def _load_file(path: str) -> Dict[str, Any]:
    import yaml
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"settings file {path} must contain a mapping")
    return data


def load_settings(env: Optional[Mapping[str, str]] = None, path: Optional[str] = None, **overrides: Any) -> Settings:
    env = os.environ if env is None else env
    settings = Settings()
    path = path if path is not None else env.get(CONFIG_PATH_ENV, "")
    if path:
        for key, value in _load_file(path).items():
            if key in _TYPES and key != "extra":
                setattr(settings, key, _coerce(key, value))
            else:
                settings.extra[key] = value
    for env_key, name in ENV_MAP.items():
        if env_key in env and env[env_key] != "":
            setattr(settings, name, _coerce(name, env[env_key]))
    for key, value in overrides.items():
        if key not in _TYPES:
            raise TypeError(f"unknown setting: {key}")
        setattr(settings, key, value)
    settings.api_prefix = settings.api_prefix.rstrip("/")
    return settings
