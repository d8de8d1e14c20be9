"""
Configuration Validation Module

Validates app.yaml and policy.yaml against Pydantic schemas and builds the
typed AgentConfig the runner is wired from. Startup fails fast on any
problem; nothing is validated again at steady state.

Environment overrides (applied before validation):
    MONITOR_INTERVAL_MS        loop.interval_ms
    MAX_REBALANCES_PER_DAY     rate_limit.max_rebalances_per_day
    MINIMUM_UTILITY_THRESHOLD  decision.min_utility_threshold
    RPC_URL                    rpc.url
    SIGNER_URL                 signer.url
    SIGNER_API_KEY             signer.api_key

String values may reference environment variables as ${NAME}.

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
import re
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional, Tuple

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from core.exceptions import ConfigValidationError

logger = logging.getLogger(__name__)

ADDRESS_PATTERN = r"^0x[0-9a-fA-F]{40}$"
SELECTOR_PATTERN = r"^0x[0-9a-fA-F]{8}$"
ENV_PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


# ===== App Schema =====
class AppSection(BaseModel):
    mode: Literal["DRY_RUN", "LIVE"] = Field(default="DRY_RUN", description="Submission mode")

    @field_validator("mode", mode="before")
    @classmethod
    def normalize_mode(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


class LoggingConfig(BaseModel):
    level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    file: str = Field(default="logs/vault-rebalancer.log", min_length=1)
    audit_file: Optional[str] = Field(default=None, description="JSONL tick audit trail")


class LoopConfig(BaseModel):
    interval_ms: int = Field(default=60_000, gt=0, description="Delay between ticks (ms)")


class HeartbeatConfig(BaseModel):
    path: str = Field(default="/tmp/vault-rebalancer-heartbeat", min_length=1)
    stale_after_seconds: float = Field(default=600.0, gt=0, description="Health endpoint reports unhealthy past this age")


class MonitoringConfig(BaseModel):
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9100, gt=0, lt=65536)
    healthcheck_enabled: bool = False
    healthcheck_port: int = Field(default=8080, gt=0, lt=65536)
    alerts_enabled: bool = False
    alerts: Dict[str, Any] = Field(default_factory=dict)


class RpcConfig(BaseModel):
    url: str = Field(pattern=r"^https?://", description="JSON-RPC endpoint")
    timeout_seconds: float = Field(default=10.0, gt=0)


class SelectorsConfig(BaseModel):
    total_assets: str = Field(default="0x01e1d114", pattern=SELECTOR_PATTERN)
    total_lent: str = Field(pattern=SELECTOR_PATTERN)
    total_borrowed: str = Field(pattern=SELECTOR_PATTERN)
    circuit_breaker_level: str = Field(pattern=SELECTOR_PATTERN)


class ContractsConfig(BaseModel):
    vault_address: str = Field(pattern=ADDRESS_PATTERN)
    reserve_token_address: str = Field(pattern=ADDRESS_PATTERN)
    strategy_token_address: str = Field(pattern=ADDRESS_PATTERN)
    lending_pool_address: str = Field(pattern=ADDRESS_PATTERN)
    selectors: SelectorsConfig


class SignerConfig(BaseModel):
    url: Optional[str] = Field(default=None, description="Signing service base URL")
    api_key: Optional[str] = None
    wallet_id: Optional[str] = None
    request_timeout_seconds: float = Field(default=20.0, gt=0)
    settle_timeout_seconds: float = Field(default=60.0, gt=0)
    poll_interval_seconds: float = Field(default=2.0, gt=0)


class AppSchema(BaseModel):
    app: AppSection = Field(default_factory=AppSection)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    heartbeat: HeartbeatConfig = Field(default_factory=HeartbeatConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    rpc: RpcConfig
    contracts: ContractsConfig
    signer: SignerConfig = Field(default_factory=SignerConfig)

    @model_validator(mode="after")
    def live_requires_signer(self) -> "AppSchema":
        if self.app.mode == "LIVE":
            missing = [name for name in ("url", "api_key", "wallet_id") if not getattr(self.signer, name)]
            if missing:
                raise ValueError(f"LIVE mode requires signer.{', signer.'.join(missing)}")
        return self


# ===== Policy Schema =====
class DecisionConfig(BaseModel):
    """Utility model constants"""
    buffer_fraction: float = Field(default=0.05, ge=0, le=1, description="Idle reserve target as fraction of assets")
    protocol_fee: float = Field(default=0.05, ge=0, lt=1, description="Fee taken from strategy yield")
    holding_horizon_days: float = Field(default=30.0, gt=0, description="Assumed holding period for yield")
    risk_factor: float = Field(default=0.1, ge=0, description="Early-redemption loss factor")
    early_redeem_probability: float = Field(default=0.2, ge=0, le=1)
    fixed_gas_cost: float = Field(default=0.5, ge=0, description="Per-operation cost in asset units")
    urgency_scale: float = Field(default=10.0, gt=0)
    strategy_yield_rate: float = Field(default=0.045, ge=0, description="Annualized strategy yield")
    asset_decimals: int = Field(default=6, ge=0, le=36)
    min_utility_threshold: float = Field(default=0.001, description="Utility a rebalance must beat")


class RateLimitConfig(BaseModel):
    max_rebalances_per_day: int = Field(default=3, ge=0)


class ExecutionConfig(BaseModel):
    max_attempts: int = Field(default=3, ge=1, le=10)
    base_delay_ms: int = Field(default=1000, ge=0)
    consecutive_failure_warning: int = Field(default=10, ge=1)


class PolicySchema(BaseModel):
    decision: DecisionConfig = Field(default_factory=DecisionConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)


class AgentConfig(BaseModel):
    """Validated app + policy configuration."""
    app: AppSchema
    policy: PolicySchema


# ===== Loading =====
ENV_OVERRIDES: Tuple[Tuple[str, str, Tuple[str, ...], type], ...] = (
    ("MONITOR_INTERVAL_MS", "app", ("loop", "interval_ms"), int),
    ("MAX_REBALANCES_PER_DAY", "policy", ("rate_limit", "max_rebalances_per_day"), int),
    ("MINIMUM_UTILITY_THRESHOLD", "policy", ("decision", "min_utility_threshold"), float),
    ("RPC_URL", "app", ("rpc", "url"), str),
    ("SIGNER_URL", "app", ("signer", "url"), str),
    ("SIGNER_API_KEY", "app", ("signer", "api_key"), str),
)


def _format_yaml_error(file_path: Path, error: yaml.YAMLError) -> str:
    """Message with line/column context for YAML errors."""
    mark = getattr(error, "problem_mark", None)
    if mark is None:
        return f"Malformed YAML in {file_path}: {error}"
    problem = getattr(error, "problem", str(error))
    return f"Malformed YAML in {file_path}: line {mark.line + 1}, column {mark.column + 1}: {problem}"


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


def _expand_env(value: Any, environ: Mapping[str, str]) -> Any:
    """Substitute ${NAME}; a value that is only an unset placeholder becomes None."""
    if isinstance(value, dict):
        return {k: _expand_env(v, environ) for k, v in value.items()}
    if isinstance(value, list):
        return [_expand_env(v, environ) for v in value]
    if isinstance(value, str) and "${" in value:
        whole = ENV_PLACEHOLDER.fullmatch(value.strip())
        if whole and not environ.get(whole.group(1)):
            return None
        return ENV_PLACEHOLDER.sub(lambda m: environ.get(m.group(1), m.group(0)), value)
    return value


def apply_env_overrides(app_raw: Dict[str, Any], policy_raw: Dict[str, Any],
                        environ: Mapping[str, str]) -> List[str]:
    """Apply numeric/string overrides in place; return errors for bad values."""
    errors: List[str] = []
    targets = {"app": app_raw, "policy": policy_raw}

    for env_name, target, path, cast in ENV_OVERRIDES:
        raw = environ.get(env_name)
        if raw is None or raw == "":
            continue
        try:
            value = cast(raw)
        except ValueError:
            errors.append(f"Environment variable {env_name} must be a valid number, got: \"{raw}\"")
            continue

        node = targets[target]
        for key in path[:-1]:
            child = node.get(key)
            if not isinstance(child, dict):
                child = {}
                node[key] = child
            node = child
        node[path[-1]] = value

    return errors


def _validation_errors(filename: str, error: ValidationError) -> List[str]:
    messages = []
    for item in error.errors():
        field = " -> ".join(str(loc) for loc in item["loc"])
        messages.append(f"{filename}: {field}: {item['msg']}" if field else f"{filename}: {item['msg']}")
    return messages


def _load_raw(config_path: Path, filename: str, errors: List[str]) -> Dict[str, Any]:
    try:
        raw = load_yaml_file(config_path / filename)
    except FileNotFoundError as e:
        errors.append(f"{filename}: {e}")
        return {}
    except yaml.YAMLError as e:
        errors.append(f"{filename}: Invalid YAML - {e}")
        return {}
    if not isinstance(raw, dict):
        errors.append(f"{filename}: top level must be a mapping")
        return {}
    return raw


def _build(config_dir: str, environ: Optional[Mapping[str, str]]) -> Tuple[Optional[AgentConfig], List[str]]:
    environ = os.environ if environ is None else environ
    config_path = Path(config_dir)
    errors: List[str] = []

    app_raw = _expand_env(_load_raw(config_path, "app.yaml", errors), environ)
    policy_raw = _expand_env(_load_raw(config_path, "policy.yaml", errors), environ)
    if errors:
        return None, errors

    errors.extend(apply_env_overrides(app_raw, policy_raw, environ))

    app = policy = None
    try:
        app = AppSchema(**app_raw)
    except ValidationError as e:
        errors.extend(_validation_errors("app.yaml", e))
    try:
        policy = PolicySchema(**policy_raw)
    except ValidationError as e:
        errors.extend(_validation_errors("policy.yaml", e))

    if errors or app is None or policy is None:
        return None, errors
    return AgentConfig(app=app, policy=policy), []


def validate_all_configs(config_dir: str = "config", environ: Optional[Mapping[str, str]] = None) -> List[str]:
    """
    Validate all configuration files.

    Returns:
        List of all error messages (empty if all valid)
    """
    _, errors = _build(config_dir, environ)
    if not errors:
        logger.info("✅ All config files validated successfully")
    else:
        logger.error(f"❌ {len(errors)} validation error(s) found")
    return errors


def load_agent_config(config_dir: str = "config", environ: Optional[Mapping[str, str]] = None) -> AgentConfig:
    """Validated configuration; raises ConfigValidationError listing every problem."""
    config, errors = _build(config_dir, environ)
    if errors or config is None:
        raise ConfigValidationError(errors)
    return config


if __name__ == "__main__":
    """Run validation from command line"""
    import sys

    logging.basicConfig(level=logging.INFO, format='%(levelname)s: %(message)s')

    config_dir = sys.argv[1] if len(sys.argv) > 1 else "config"

    errors = validate_all_configs(config_dir)

    if errors:
        print("\n❌ Configuration Validation Failed:\n")
        for error in errors:
            print(f"  • {error}")
        print()
        sys.exit(1)
    else:
        print("\n✅ All configuration files are valid!\n")
        sys.exit(0)
