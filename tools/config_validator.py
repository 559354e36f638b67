"""
Configuration Validation Module

Validates app.yaml and guidelines.yaml against Pydantic schemas.
Ensures config files are correct before system startup.

Usage:
    from tools.config_validator import validate_all_configs

    errors = validate_all_configs("config")
    if errors:
        for error in errors:
            print(f"ERROR: {error}")
        sys.exit(1)
"""
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from core.rules import validate_rule_set

logger = logging.getLogger(__name__)

API_KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
}


# ===== App Schema =====
class AppSection(BaseModel):
    name: str = Field(default="swingtrader", min_length=1)
    mode: Literal["PAPER"] = Field(default="PAPER", description="Only paper trading is supported")


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO")
    file: str = Field(default="logs/swingtrader.log")
    audit_file: str = Field(default="logs/audit.jsonl")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level


class MonitoringConfig(BaseModel):
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9100, gt=0, lt=65536)
    healthcheck_enabled: bool = False
    healthcheck_port: int = Field(default=8080, gt=0, lt=65536)

    @model_validator(mode="after")
    def distinct_ports(self) -> "MonitoringConfig":
        if self.metrics_enabled and self.healthcheck_enabled and self.metrics_port == self.healthcheck_port:
            raise ValueError("metrics_port and healthcheck_port must differ")
        return self


class EngineConfig(BaseModel):
    portfolio_id: str = Field(default="default", min_length=1)
    cycle_interval_seconds: float = Field(default=300, gt=0, description="Seconds between cycles")
    max_workers: int = Field(default=4, gt=0, le=64, description="Per-symbol worker threads")
    call_timeout_seconds: float = Field(default=15, gt=0, description="Timeout for collaborator calls")
    initial_cash: float = Field(default=100_000, gt=0)
    snapshot_interval_minutes: float = Field(default=60, gt=0)
    max_signals_per_cycle: int = Field(default=10, gt=0)
    min_confidence: float = Field(default=0.6, ge=0, le=1)
    watch_guidelines: bool = True


class AdvisoryConfig(BaseModel):
    enabled: bool = True
    provider: Literal["openai", "anthropic", "mock"] = "mock"
    model: Optional[str] = None
    timeout_seconds: float = Field(default=10, gt=0)


class BrokerConfig(BaseModel):
    slippage_pct: float = Field(default=0.01, ge=0, le=5, description="Slippage % against the trader")
    fee: float = Field(default=1.0, ge=0, description="Flat fee per fill")
    latency_ms: float = Field(default=100, ge=0)
    failure_rate: float = Field(default=0.0, ge=0, le=1)
    seed: Optional[int] = None


class MarketDataConfig(BaseModel):
    seed: Optional[int] = None
    volatility: float = Field(default=0.005, gt=0, lt=1)


class PersistenceConfig(BaseModel):
    db_path: str = Field(default="data/swingtrader.db", min_length=1)


class GuidelinesConfig(BaseModel):
    file: str = Field(default="guidelines.yaml", min_length=1)
    backup_dir: Optional[str] = "data/guidelines_backup"


class UniverseConfig(BaseModel):
    symbols: List[str] = Field(min_length=1)

    @field_validator("symbols")
    @classmethod
    def normalize_symbols(cls, v: List[str]) -> List[str]:
        cleaned = [s.strip().upper() for s in v if s and s.strip()]
        if len(set(cleaned)) != len(cleaned):
            raise ValueError("universe.symbols contains duplicates")
        return cleaned


class AppConfig(BaseModel):
    app: AppSection = Field(default_factory=AppSection)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    engine: EngineConfig = Field(default_factory=EngineConfig)
    advisory: AdvisoryConfig = Field(default_factory=AdvisoryConfig)
    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    market_data: MarketDataConfig = Field(default_factory=MarketDataConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    guidelines: GuidelinesConfig = Field(default_factory=GuidelinesConfig)
    universe: UniverseConfig


def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Return enriched message with line/column context for YAML errors."""
    message = f"Malformed YAML in {file_path}: {error}"
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return message

    line, column = mark.line, mark.column
    try:
        raw_lines = file_path.read_text().splitlines()
    except OSError:
        return f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}"

    snippet = "\n".join(
        f"{'>' if idx == line else ' '} {idx + 1:04d} | {raw_lines[idx]}"
        for idx in range(max(line - 2, 0), min(line + 3, len(raw_lines)))
    )
    problem = getattr(error, "problem", str(error))
    return (
        f"Malformed YAML in {file_path}: line {line + 1}, column {column + 1}: {problem}\n"
        f"Context:\n{snippet}"
    )


def load_yaml_file(file_path: Path) -> Dict[str, Any]:
    """
    Load YAML file and return as dict.

    Raises:
        FileNotFoundError: If file doesn't exist
        yaml.YAMLError: If YAML is malformed
    """
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {file_path}")

    with open(file_path, "r") as f:
        try:
            return yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise yaml.YAMLError(_format_yaml_error(file_path, e))


def load_app_config(config_dir: str = "config") -> AppConfig:
    """Load and parse app.yaml (raises on any error)."""
    return AppConfig(**load_yaml_file(Path(config_dir) / "app.yaml"))


def validate_app(config_dir: Path) -> List[str]:
    """Validate app.yaml against AppConfig."""
    errors = []
    app_path = config_dir / "app.yaml"

    try:
        AppConfig(**load_yaml_file(app_path))
        logger.info("app.yaml validation passed")
    except FileNotFoundError as e:
        errors.append(f"app.yaml: {e}")
    except yaml.YAMLError as e:
        errors.append(f"app.yaml: Invalid YAML - {e}")
    except ValidationError as e:
        for error in e.errors():
            field = " -> ".join(str(loc) for loc in error["loc"])
            errors.append(f"app.yaml: {field}: {error['msg']}")

    return errors


def _guidelines_path(config_dir: Path) -> Path:
    try:
        data = load_yaml_file(config_dir / "app.yaml")
        name = ((data.get("guidelines") or {}).get("file")) or "guidelines.yaml"
    except (FileNotFoundError, yaml.YAMLError):
        name = "guidelines.yaml"
    path = Path(name)
    return path if path.is_absolute() else config_dir / path


def validate_guidelines(config_dir: Path) -> List[str]:
    """Validate the guidelines document with the same rules the engine applies."""
    errors = []
    path = _guidelines_path(config_dir)
    label = path.name

    try:
        result = validate_rule_set(load_yaml_file(path))
    except FileNotFoundError as e:
        return [f"{label}: {e}"]
    except yaml.YAMLError as e:
        return [f"{label}: Invalid YAML - {e}"]

    for error in result.errors:
        errors.append(f"{label}: {error}")
    for warning in result.warnings:
        logger.warning(f"{label}: {warning}")
    if result.is_valid:
        logger.info(f"{label} validation passed")
    return errors


def validate_sanity_checks(config_dir: Path) -> List[str]:
    """
    Cross-file consistency checks, run only after schema validation passed.

    Checks:
    - risk per trade does not exceed the max position size
    - daily loss limit does not exceed the drawdown limit
    - stop-loss max_risk_pct above risk per trade (warning only)
    - a real advisory provider has its API key in the environment
    """
    errors = []
    app = AppConfig(**load_yaml_file(config_dir / "app.yaml"))
    rule_set = validate_rule_set(load_yaml_file(_guidelines_path(config_dir))).rule_set
    limits = rule_set.limits

    if limits.risk_per_trade_pct > limits.max_position_size_pct:
        errors.append(
            f"guidelines: risk_per_trade_pct ({limits.risk_per_trade_pct}) exceeds "
            f"max_position_size_pct ({limits.max_position_size_pct})"
        )
    if limits.max_daily_loss_pct > limits.max_drawdown_pct:
        errors.append(
            f"guidelines: max_daily_loss_pct ({limits.max_daily_loss_pct}) exceeds "
            f"max_drawdown_pct ({limits.max_drawdown_pct})"
        )
    if rule_set.exit_criteria.stop_loss.max_risk_pct > limits.risk_per_trade_pct:
        logger.warning(
            f"guidelines: stop_loss.max_risk_pct ({rule_set.exit_criteria.stop_loss.max_risk_pct}) "
            f"is above risk_per_trade_pct ({limits.risk_per_trade_pct}); the risk check will shrink trades"
        )

    if app.advisory.enabled and app.advisory.provider in API_KEY_ENV:
        env_name = API_KEY_ENV[app.advisory.provider]
        if not os.getenv(env_name):
            errors.append(f"app.yaml: advisory.provider={app.advisory.provider} requires {env_name} to be set")

    return errors


def validate_all_configs(config_dir: str = "config") -> List[str]:
    """
    Validate all configuration files.

    Performs:
    1. Schema validation (Pydantic type checks)
    2. Sanity checks (logical consistency)

    Returns:
        List of all error messages (empty if all valid)
    """
    config_path = Path(config_dir)

    all_errors = []
    all_errors.extend(validate_app(config_path))
    all_errors.extend(validate_guidelines(config_path))

    if not all_errors:
        all_errors.extend(validate_sanity_checks(config_path))

    if not all_errors:
        logger.info("All config files validated successfully")
    else:
        logger.error(f"{len(all_errors)} validation error(s) found")

    return all_errors


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"

    errors = validate_all_configs(config_dir)

    if errors:
        print("\nConfiguration Validation Failed:\n")
        for error in errors:
            print(f"  - {error}")
        print()
        sys.exit(1)
    else:
        print("\nAll configuration files are valid!\n")
        sys.exit(0)
