"""Configuration helpers for the inference agent."""

from __future__ import annotations

import os
import re
from typing import Any, Callable, Dict

import yaml

from .errors import ConfigError

DEFAULT_CHAIN_RPC = "https://evmrpc-testnet.0g.ai"
DEFAULT_CHAIN_ID = 16602

_DURATION_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(ms|s|m|h)?\s*$")
_DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0, None: 1.0}


def parse_duration(value: Any) -> float:
    """Return ``value`` in seconds.

    Accepts numbers (seconds) and strings such as ``500ms``, ``2s``, ``5m`` or
    ``1h``.
    """
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        return float(value)
    match = _DURATION_RE.match(str(value))
    if not match:
        raise ConfigError(f"invalid duration: {value!r}")
    return float(match.group(1)) * _DURATION_UNITS[match.group(2)]


def parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.lower() not in ("0", "false", "no")
    return bool(value)


def _parse_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid integer: {value!r}") from exc


def _parse_str(value: Any) -> str:
    return str(value)


# key, environment variable, parser, default
_OPTIONS: list[tuple[str, str, Callable[[Any], Any], Any]] = [
    ("agent_id", "INFERENCE_AGENT_ID", _parse_str, None),
    ("task_channel", "INFERENCE_TASK_CHANNEL", _parse_str, "inference.tasks"),
    ("result_channel", "INFERENCE_RESULT_CHANNEL", _parse_str, "inference.results"),
    ("transport", "INFERENCE_TRANSPORT", _parse_str, "nats"),
    ("nats_url", "INFERENCE_NATS_URL", _parse_str, "nats://localhost:4222"),
    ("nats_jetstream", "INFERENCE_NATS_JETSTREAM", parse_bool, True),
    ("health_interval", "INFERENCE_HEALTH_INTERVAL", parse_duration, 30.0),
    ("queue_size", "INFERENCE_QUEUE_SIZE", _parse_int, 16),
    ("reconnect_delay", "INFERENCE_RECONNECT_DELAY", parse_duration, 2.0),
    ("reconnect_max_attempts", "INFERENCE_RECONNECT_MAX_ATTEMPTS", _parse_int, 11),
    ("compute_endpoint", "INFERENCE_COMPUTE_ENDPOINT", _parse_str, None),
    ("provider_endpoint", "INFERENCE_PROVIDER_ENDPOINT", _parse_str, None),
    ("serving_contract", "INFERENCE_SERVING_CONTRACT", _parse_str, None),
    ("provider_cache_ttl", "INFERENCE_PROVIDER_CACHE_TTL", parse_duration, 300.0),
    ("poll_interval", "INFERENCE_POLL_INTERVAL", parse_duration, 2.0),
    ("poll_timeout", "INFERENCE_POLL_TIMEOUT", parse_duration, 300.0),
    ("storage_endpoint", "INFERENCE_STORAGE_ENDPOINT", _parse_str, None),
    ("flow_contract", "INFERENCE_FLOW_CONTRACT", _parse_str, None),
    ("chain_rpc", "INFERENCE_CHAIN_RPC", _parse_str, DEFAULT_CHAIN_RPC),
    ("chain_id", "INFERENCE_CHAIN_ID", _parse_int, DEFAULT_CHAIN_ID),
    ("private_key", "INFERENCE_PRIVATE_KEY", _parse_str, None),
    ("token_contract", "INFERENCE_TOKEN_CONTRACT", _parse_str, None),
    ("encryption_key", "INFERENCE_ENCRYPTION_KEY", _parse_str, None),
    ("encryption_key_id", "INFERENCE_ENCRYPTION_KEY_ID", _parse_str, "default"),
    ("audit_endpoint", "INFERENCE_AUDIT_ENDPOINT", _parse_str, None),
    ("audit_namespace", "INFERENCE_AUDIT_NAMESPACE", _parse_str, "inference-audit"),
    ("audit_max_retries", "INFERENCE_AUDIT_MAX_RETRIES", _parse_int, 3),
    ("audit_backoff", "INFERENCE_AUDIT_BACKOFF", parse_duration, 1.0),
    ("request_timeout", "INFERENCE_REQUEST_TIMEOUT", parse_duration, 30.0),
    ("health_port", "INFERENCE_HEALTH_PORT", _parse_int, None),
    ("metrics_port", "INFERENCE_METRICS_PORT", _parse_int, None),
    ("log_level", "INFERENCE_LOG_LEVEL", _parse_str, "INFO"),
]

_POSITIVE = (
    "health_interval",
    "queue_size",
    "reconnect_max_attempts",
    "provider_cache_ttl",
    "poll_interval",
    "poll_timeout",
    "request_timeout",
)

TRANSPORTS = ("nats", "memory")


def load_config(path: str | None = None) -> Dict[str, Any]:
    """Load configuration from ``path`` or ``INFERENCE_CONFIG`` env var.

    Values from the YAML file are overridden by the matching ``INFERENCE_*``
    environment variables. Missing options take their defaults. The returned
    dictionary is validated; problems raise :class:`ConfigError`.
    """

    cfg: Dict[str, Any] = {}
    path = path or os.getenv("INFERENCE_CONFIG")
    if path:
        if not os.path.exists(path):
            raise ConfigError(f"config file not found: {path}")
        with open(path, "r") as fh:
            try:
                cfg = yaml.safe_load(fh) or {}
            except yaml.YAMLError as exc:
                raise ConfigError(f"invalid config file {path}: {exc}") from exc
        if not isinstance(cfg, dict):
            raise ConfigError(f"config file {path} must contain a mapping")

    for key, env, parse, default in _OPTIONS:
        if env in os.environ:
            cfg[key] = parse(os.environ[env])
        elif cfg.get(key) is not None:
            cfg[key] = parse(cfg[key])
        else:
            cfg[key] = default

    validate_config(cfg)
    return cfg


def validate_config(cfg: Dict[str, Any]) -> None:
    """Raise :class:`ConfigError` when ``cfg`` cannot run an agent."""

    if not cfg.get("agent_id"):
        raise ConfigError("INFERENCE_AGENT_ID is required")
    if cfg["transport"] not in TRANSPORTS:
        raise ConfigError(f"unknown transport: {cfg['transport']}")
    for key in _POSITIVE:
        if cfg[key] <= 0:
            raise ConfigError(f"{key} must be positive")
    if cfg["audit_max_retries"] < 0:
        raise ConfigError("audit_max_retries must not be negative")

    if cfg.get("encryption_key"):
        cfg["encryption_key_bytes"] = decode_key(cfg["encryption_key"])
    else:
        cfg["encryption_key_bytes"] = None

    if cfg.get("token_contract"):
        missing = [k for k in ("private_key", "encryption_key") if not cfg.get(k)]
        if missing:
            raise ConfigError(
                "minting requires " + ", ".join(missing) + " alongside token_contract"
            )


def decode_key(value: str) -> bytes:
    text = value[2:] if value.startswith("0x") else value
    try:
        key = bytes.fromhex(text)
    except ValueError as exc:
        raise ConfigError("encryption key is not valid hex") from exc
    if len(key) != 32:
        raise ConfigError(f"encryption key must be 32 bytes, got {len(key)}")
    return key
