"""
Configuration management and loading.

Handles the credit budget, cost schedule, cache policy and runtime settings.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from credit_meter.core.cache import EvictionPolicy
from credit_meter.core.ledger import DEFAULT_RESERVATION_TTL, AdmissionMode
from credit_meter.core.pricing import (
    DISTILLATION_OPERATION,
    IMAGE_OPERATION,
    IMAGE_SIZES,
    MONTHLY_CREDIT_LIMIT,
    PIPELINE_COMPLEXITIES,
    CreditSchedule,
)
from credit_meter.storage.db import DEFAULT_DB_PATH

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


@dataclass(frozen=True)
class BudgetConfig:
    """Process-wide monthly allowance and admission behaviour."""
    monthly_limit: int = MONTHLY_CREDIT_LIMIT
    admission: AdmissionMode = AdmissionMode.STRICT
    reservation_ttl_seconds: Optional[float] = DEFAULT_RESERVATION_TTL.total_seconds()

    def __post_init__(self):
        """Validate the allowance and hold expiry are positive."""
        if self.monthly_limit <= 0:
            raise ValueError("monthly_limit must be > 0")
        if self.reservation_ttl_seconds is not None and self.reservation_ttl_seconds <= 0:
            raise ValueError("reservation_ttl_seconds must be > 0")

    @property
    def reservation_ttl(self) -> Optional[timedelta]:
        if self.reservation_ttl_seconds is None:
            return None
        return timedelta(seconds=self.reservation_ttl_seconds)


@dataclass(frozen=True)
class RuntimeConfig:
    """Where data lives and how operations run."""
    db_path: str = DEFAULT_DB_PATH
    generation_timeout_seconds: Optional[float] = None
    max_workers: int = 4
    asset_bucket: str = "credit-meter-assets"
    log_level: str = "INFO"
    json_logs: bool = False

    def __post_init__(self):
        """Validate runtime values."""
        if not self.db_path:
            raise ValueError("db_path cannot be empty")
        if self.generation_timeout_seconds is not None and self.generation_timeout_seconds <= 0:
            raise ValueError("generation_timeout_seconds must be > 0")
        if self.max_workers <= 0:
            raise ValueError("max_workers must be > 0")
        if self.log_level.upper() not in _VALID_LOG_LEVELS:
            raise ValueError(f"log_level must be one of: {sorted(_VALID_LOG_LEVELS)}")


@dataclass(frozen=True)
class MeterConfig:
    """Complete credit meter configuration."""
    budget: BudgetConfig = field(default_factory=BudgetConfig)
    schedule: CreditSchedule = field(default_factory=CreditSchedule)
    eviction: Optional[EvictionPolicy] = None
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)

    @classmethod
    def default(cls, db_path: Optional[str] = None) -> "MeterConfig":
        """Reference deployment settings, optionally with another database."""
        if db_path:
            return cls(runtime=RuntimeConfig(db_path=db_path))
        return cls()


def load_meter_config(path: str) -> MeterConfig:
    """Load and validate credit meter configuration from a YAML file.

    Strict validation ensures no silent misconfiguration can loosen the
    budget or change prices unnoticed.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated MeterConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Credit meter config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'budget', 'costs', 'cache', 'runtime'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    if 'budget' not in raw_config:
        raise ValueError("Missing required 'budget' section")

    return MeterConfig(
        budget=_parse_budget(raw_config['budget']),
        schedule=_parse_costs(raw_config.get('costs')),
        eviction=_parse_cache(raw_config.get('cache')),
        runtime=_parse_runtime(raw_config.get('runtime')),
    )


def _require_dict(data: Any, path: str) -> Dict:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    return data


def _reject_unknown(data: Dict, allowed: set, path: str) -> None:
    unknown = set(data.keys()) - allowed
    if unknown:
        raise ValueError(f"Unknown keys in {path}: {unknown}")


def _positive_int(value: Any, path: str) -> int:
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise ValueError(f"'{path}' must be a positive integer")
    return value


def _parse_budget(data: Any) -> BudgetConfig:
    data = _require_dict(data, "budget")
    _reject_unknown(data, {'monthly_limit', 'admission', 'reservation_ttl_seconds'}, "budget")

    if 'monthly_limit' not in data:
        raise ValueError("Missing required 'monthly_limit' budget")
    monthly_limit = _positive_int(data['monthly_limit'], "budget.monthly_limit")

    admission_str = data.get('admission', AdmissionMode.STRICT.value)
    if not isinstance(admission_str, str):
        raise ValueError("'admission' in budget must be a string")
    try:
        admission = AdmissionMode(admission_str.lower())
    except ValueError:
        valid = [mode.value for mode in AdmissionMode]
        raise ValueError(f"'admission' in budget must be one of: {valid}")

    ttl = data.get('reservation_ttl_seconds', DEFAULT_RESERVATION_TTL.total_seconds())
    if ttl is not None and (not isinstance(ttl, (int, float)) or isinstance(ttl, bool)):
        raise ValueError("'budget.reservation_ttl_seconds' must be a number or null")

    return BudgetConfig(
        monthly_limit=monthly_limit,
        admission=admission,
        reservation_ttl_seconds=float(ttl) if ttl is not None else None,
    )


def _parse_costs(data: Any) -> CreditSchedule:
    """Parse the cost schedule; omitted tiers keep their default price."""
    if data is None:
        return CreditSchedule()
    data = _require_dict(data, "costs")
    _reject_unknown(data, {IMAGE_OPERATION, DISTILLATION_OPERATION}, "costs")

    prices = CreditSchedule().prices
    tiers_by_operation = {
        IMAGE_OPERATION: IMAGE_SIZES,
        DISTILLATION_OPERATION: PIPELINE_COMPLEXITIES,
    }
    for operation, tiers in tiers_by_operation.items():
        if operation not in data:
            continue
        section = _require_dict(data[operation], f"costs.{operation}")
        _reject_unknown(section, set(tiers), f"costs.{operation}")
        for tier, cost in section.items():
            if not isinstance(cost, int) or isinstance(cost, bool) or cost < 0:
                raise ValueError(f"'costs.{operation}.{tier}' must be a non-negative integer")
            prices[operation][tier] = cost

    return CreditSchedule(prices=prices)


def _parse_cache(data: Any) -> Optional[EvictionPolicy]:
    if data is None:
        return None
    data = _require_dict(data, "cache")
    _reject_unknown(data, {'max_age_days', 'max_entries'}, "cache")

    max_age = data.get('max_age_days')
    max_entries = data.get('max_entries')
    if max_age is None and max_entries is None:
        return None
    return EvictionPolicy(
        max_age_days=_positive_int(max_age, "cache.max_age_days") if max_age is not None else None,
        max_entries=(
            _positive_int(max_entries, "cache.max_entries") if max_entries is not None else None
        ),
    )


def _parse_runtime(data: Any) -> RuntimeConfig:
    if data is None:
        return RuntimeConfig()
    data = _require_dict(data, "runtime")
    allowed = {
        'db_path', 'generation_timeout_seconds', 'max_workers',
        'asset_bucket', 'log_level', 'json_logs',
    }
    _reject_unknown(data, allowed, "runtime")

    timeout = data.get('generation_timeout_seconds')
    if timeout is not None and (not isinstance(timeout, (int, float)) or isinstance(timeout, bool)):
        raise ValueError("'runtime.generation_timeout_seconds' must be a number")

    json_logs = data.get('json_logs', False)
    if not isinstance(json_logs, bool):
        raise ValueError("'runtime.json_logs' must be a boolean")

    defaults = RuntimeConfig()
    return RuntimeConfig(
        db_path=str(data.get('db_path', defaults.db_path)),
        generation_timeout_seconds=float(timeout) if timeout is not None else None,
        max_workers=_positive_int(data.get('max_workers', defaults.max_workers), "runtime.max_workers"),
        asset_bucket=str(data.get('asset_bucket', defaults.asset_bucket)),
        log_level=str(data.get('log_level', defaults.log_level)).upper(),
        json_logs=json_logs,
    )
