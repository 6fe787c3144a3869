"""Configuration management for the DR control plane."""

import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Mapping, Optional

import yaml

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


def _env_str(env: Mapping[str, str], var_name: str, default: str) -> str:
    value = env.get(var_name)
    if value is None or value.strip() == "":
        return default
    return value.strip()


def _env_int(env: Mapping[str, str], var_name: str, default: int) -> int:
    """Parse an integer, falling back to the default on garbage."""
    value = env.get(var_name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring non-integer value for {var_name}: {value!r}")
        return default


def _env_float(env: Mapping[str, str], var_name: str, default: float) -> float:
    value = env.get(var_name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        logger.warning(f"Ignoring non-numeric value for {var_name}: {value!r}")
        return default


def _env_bool(env: Mapping[str, str], var_name: str, default: bool) -> bool:
    value = env.get(var_name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_list(env: Mapping[str, str], var_name: str, default: List[str]) -> List[str]:
    value = env.get(var_name)
    if value is None or value.strip() == "":
        return list(default)
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class Config:
    """Central configuration for all control plane components."""

    # Deployment
    DEPLOYMENT_ID: str = "default"
    PRIMARY_REGION: str = ""
    STANDBY_REGION: str = ""
    # Replica that holds the authoritative failover state row
    CONTROL_REGION: str = ""

    # Replicated store
    FAILOVER_STATE_TABLE: str = ""
    SENTINEL_TABLE: str = ""
    BACKUP_METADATA_TABLE: str = ""
    APPLICATION_TABLES: List[str] = field(default_factory=list)
    SENTINEL_PROBE_KEY: str = "sentinel"

    # Object store
    BACKUP_BUCKET: str = ""
    BACKUP_PREFIX: str = "backups"
    ROUTING_INTENT_BUCKET: str = ""
    ROUTING_INTENT_REGION: str = ""
    ROUTING_INTENT_KEY: str = "routing/intent.json"
    VALIDATION_REPORT_BUCKET: str = ""

    # Health thresholds
    HEALTH_LAG_THRESHOLD_SECONDS: float = 60.0
    LAG_HARD_CEILING_SECONDS: float = 300.0
    HEALTH_WARNING_THRESHOLD: float = 0.5
    HEALTH_CRITICAL_THRESHOLD: float = 0.25
    CONSECUTIVE_FAILURES: int = 2
    AUTO_FAILOVER_ENABLED: bool = True

    # Timeouts
    PROBE_TIMEOUT_SECONDS: float = 5.0
    STORE_TIMEOUT_SECONDS: float = 10.0
    CLIENT_MAX_ATTEMPTS: int = 3
    SENTINEL_POLL_ATTEMPTS: int = 3
    SENTINEL_POLL_INTERVAL_SECONDS: float = 1.0

    # Validation
    VALIDATION_SAMPLE_SIZE: int = 100
    VALIDATION_HEALTHY_PERCENT: float = 95.0
    FAILBACK_MIN_MATCH_PERCENT: float = 99.0

    # Backups
    BACKUP_MAX_AGE_HOURS: float = 24.0
    INCREMENTAL_TIMESTAMP_ATTRIBUTE: str = "updated_at"

    # Observability
    METRICS_NAMESPACE: str = "DisasterRecovery"
    LOG_LEVEL: str = "INFO"
    STRUCTURED_LOGS: bool = True

    # Local endpoints (LocalStack and friends)
    AWS_ENDPOINT_URL: Optional[str] = None

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Config":
        """Build configuration from environment variables."""
        env = os.environ if env is None else env
        defaults = cls()

        values: Dict[str, Any] = {}
        for f in fields(cls):
            default = getattr(defaults, f.name)
            if f.name == "AWS_ENDPOINT_URL":
                values[f.name] = env.get(f.name) or None
            elif isinstance(default, bool):
                values[f.name] = _env_bool(env, f.name, default)
            elif isinstance(default, int):
                values[f.name] = _env_int(env, f.name, default)
            elif isinstance(default, float):
                values[f.name] = _env_float(env, f.name, default)
            elif isinstance(default, list):
                values[f.name] = _env_list(env, f.name, default)
            else:
                values[f.name] = _env_str(env, f.name, default)

        return cls(**values)

    def __post_init__(self):
        self.apply_derived_defaults()

    def apply_derived_defaults(self):
        """Fill identifiers that default to other identifiers"""
        if not self.ROUTING_INTENT_BUCKET:
            self.ROUTING_INTENT_BUCKET = self.BACKUP_BUCKET
        # The primary may be the region that is down
        if not self.ROUTING_INTENT_REGION:
            self.ROUTING_INTENT_REGION = self.STANDBY_REGION
        if not self.CONTROL_REGION:
            self.CONTROL_REGION = self.STANDBY_REGION

    @property
    def regions(self) -> List[str]:
        return [r for r in (self.PRIMARY_REGION, self.STANDBY_REGION) if r]

    def peer_region(self, region: str) -> str:
        """Return the other region of the pair."""
        return self.STANDBY_REGION if region == self.PRIMARY_REGION else self.PRIMARY_REGION

    def validate(self) -> bool:
        """Validate configuration before any collaborator call."""
        required_fields = [
            'PRIMARY_REGION',
            'STANDBY_REGION',
            'FAILOVER_STATE_TABLE',
            'SENTINEL_TABLE',
            'BACKUP_METADATA_TABLE',
            'BACKUP_BUCKET',
        ]

        missing = [name for name in required_fields if not getattr(self, name)]
        if missing:
            raise ConfigurationError(
                f"Required configuration fields not set: {', '.join(missing)}"
            )

        if self.PRIMARY_REGION == self.STANDBY_REGION:
            raise ConfigurationError("PRIMARY_REGION and STANDBY_REGION must differ")

        if self.CONTROL_REGION not in self.regions:
            raise ConfigurationError("CONTROL_REGION must be the primary or the standby region")

        if not 0.0 <= self.HEALTH_CRITICAL_THRESHOLD <= self.HEALTH_WARNING_THRESHOLD <= 1.0:
            raise ConfigurationError(
                "Health thresholds must satisfy 0 <= critical <= warning <= 1"
            )

        if self.LAG_HARD_CEILING_SECONDS <= self.HEALTH_LAG_THRESHOLD_SECONDS:
            raise ConfigurationError(
                "LAG_HARD_CEILING_SECONDS must be greater than HEALTH_LAG_THRESHOLD_SECONDS"
            )

        if self.CONSECUTIVE_FAILURES < 1:
            raise ConfigurationError("CONSECUTIVE_FAILURES must be at least 1")

        if self.PROBE_TIMEOUT_SECONDS <= 0 or self.STORE_TIMEOUT_SECONDS <= 0:
            raise ConfigurationError("Timeouts must be positive")

        return True


def load_config(config_path: Optional[str] = None,
                env: Optional[Mapping[str, str]] = None) -> Config:
    """Load configuration from environment, overlaid with an optional YAML file"""
    env = dict(os.environ if env is None else env)

    config_path = config_path or env.get("DR_CONFIG_FILE")
    if config_path and os.path.exists(config_path):
        with open(config_path, 'r') as f:
            file_config = yaml.safe_load(f) or {}

        if not isinstance(file_config, dict):
            raise ConfigurationError(f"Config file {config_path} must contain a mapping")

        known = {f.name for f in fields(Config)}
        for key, value in file_config.items():
            name = str(key).upper()
            if name not in known:
                logger.warning(f"Ignoring unknown config key '{key}' in {config_path}")
                continue
            if isinstance(value, (list, tuple)):
                env[name] = ",".join(str(v) for v in value)
            elif value is not None:
                env[name] = str(value)

    return Config.from_env(env)
