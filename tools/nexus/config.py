"""
NEXUS Configuration System

Sale parameters, storage locations, operator authentication and logging,
loaded from YAML files and environment variables.

Configuration Sources (in order of precedence):
    1. Environment variables (NEXUS_*)
    2. Runtime overrides
    3. Project config file (./nexus.yaml, ./config/nexus.yaml)
    4. User config file (~/.nexus/config.yaml)
    5. Default values

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar, Union

import yaml

from tools.nexus.errors import ValidationError
from tools.nexus.hardening import parse_bool
from tools.nexus.observability import NexusLayer, get_logger
from tools.nexus.pricing import DEFAULT_GENERAL_PRICE_WEI, DEFAULT_PRESALE_PRICE_WEI
from tools.nexus.royalty import BPS_DENOMINATOR, DEFAULT_ROYALTY_BPS

T = TypeVar("T")

log = get_logger("config", NexusLayer.CONFIG)


class ConfigError(Exception):
    """Configuration error."""
    pass


class ConfigValidationError(ConfigError):
    """Configuration validation error."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding,
    validation, and change callbacks.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    secret: bool = False
    _value: Optional[T] = field(default=None, repr=False)
    _callbacks: List[Callable[[T, T], None]] = field(default_factory=list, repr=False)

    def get(self) -> T:
        """Get the current value."""
        if self.env_var and self.env_var in os.environ:
            return self._coerce(os.environ[self.env_var])
        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        """Set the value with validation."""
        if self.validator and not self.validator(value):
            raise ConfigValidationError(f"Invalid value for config: {value}")

        old_value = self._value
        self._value = value

        for callback in self._callbacks:
            callback(old_value, value)

    def reset(self) -> None:
        self._value = None

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return parse_bool(value)  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        else:
            return value  # type: ignore

    def on_change(self, callback: Callable[[T, T], None]) -> None:
        """Register a change callback."""
        self._callbacks.append(callback)


def _is_count(x: Any) -> bool:
    return isinstance(x, int) and not isinstance(x, bool) and x >= 0


@dataclass
class SaleConfig:
    """Parameters a new sale is deployed with."""
    max_total_issued: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=10000,
        env_var="NEXUS_MAX_TOTAL_ISSUED",
        description="Crew size (total token capacity)",
        validator=_is_count,
    ))
    max_preboarding_issued: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1000,
        env_var="NEXUS_MAX_PREBOARDING_ISSUED",
        description="Founding crew size (preboarding capacity)",
        validator=_is_count,
    ))
    max_per_wallet: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=3,
        env_var="NEXUS_MAX_PER_WALLET",
        description="Maximum tokens a single wallet may receive",
        validator=_is_count,
    ))
    presale_price_wei: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=DEFAULT_PRESALE_PRICE_WEI,
        env_var="NEXUS_PRESALE_PRICE_WEI",
        description="Preboarding unit price in wei",
        validator=_is_count,
    ))
    general_price_wei: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=DEFAULT_GENERAL_PRICE_WEI,
        env_var="NEXUS_GENERAL_PRICE_WEI",
        description="General boarding unit price in wei",
        validator=_is_count,
    ))
    base_uri: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="ipfs://xyz/",
        env_var="NEXUS_BASE_URI",
        description="Metadata base URI",
        validator=lambda x: isinstance(x, str),
    ))
    royalty_bps: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=DEFAULT_ROYALTY_BPS,
        env_var="NEXUS_ROYALTY_BPS",
        description="Secondary-sale royalty in basis points",
        validator=lambda x: _is_count(x) and x <= BPS_DENOMINATOR,
    ))


@dataclass
class StorageConfig:
    """Where engine state and the audit trail live."""
    state_path: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="nexus-state.json",
        env_var="NEXUS_STATE_PATH",
        description="Engine state file",
    ))
    audit_path: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="nexus-audit.jsonl",
        env_var="NEXUS_AUDIT_PATH",
        description="Audit event JSONL file",
    ))


@dataclass
class AuthConfig:
    key_path: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="NEXUS_KEY_PATH",
        description="Operator Ed25519 JWK file",
        secret=True,
    ))
    require_signatures: ConfigValue[bool] = field(default_factory=lambda: ConfigValue(
        default=False,
        env_var="NEXUS_REQUIRE_SIGNATURES",
        description="Reject commands not attributed through a signing key",
    ))


@dataclass
class ObservabilityConfig:
    """Configuration for Observability."""
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="warning",
        env_var="NEXUS_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="NEXUS_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class NexusConfig:
    """Root configuration for NEXUS."""
    sale: SaleConfig = field(default_factory=SaleConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def to_dict(self, redact: bool = False) -> Dict[str, Any]:
        """Convert to dictionary."""
        def extract_values(obj: Any) -> Any:
            if isinstance(obj, ConfigValue):
                if redact and obj.secret and obj.get():
                    return "***"
                return obj.get()
            elif hasattr(obj, "__dataclass_fields__"):
                return {k: extract_values(getattr(obj, k)) for k in obj.__dataclass_fields__}
            return obj

        return extract_values(self)

    def to_yaml(self) -> str:
        return yaml.dump(self.to_dict(redact=True), default_flow_style=False)


class ConfigManager:
    """
    Configuration manager with file loading and environment binding.

    Thread-safe singleton that manages configuration lifecycle.
    """

    _instance: Optional["ConfigManager"] = None
    _lock = threading.Lock()

    def __new__(cls) -> "ConfigManager":
        with cls._lock:
            if cls._instance is None:
                cls._instance = super().__new__(cls)
                cls._instance._initialized = False
            return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._config = NexusConfig()
        self._config_paths: List[Path] = []
        self._watchers: List[Callable[[NexusConfig], None]] = []
        self._initialized = True

    @property
    def config(self) -> NexusConfig:
        return self._config

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ConfigError(f"Invalid YAML in {path}: {e}") from e

        if data is not None and not isinstance(data, dict):
            raise ConfigError(f"Configuration root must be a mapping: {path}")
        if data:
            self._apply_dict(data)
            if path not in self._config_paths:
                self._config_paths.append(path)

    def load_defaults(self) -> None:
        """Load default configuration files if they exist."""
        default_paths = [
            Path("nexus.yaml"),
            Path("config/nexus.yaml"),
            Path.home() / ".nexus" / "config.yaml",
        ]

        # Later files win, so load the lowest precedence first.
        for path in reversed(default_paths):
            if path.exists():
                try:
                    self.load_from_file(path)
                except ConfigError as e:
                    log.warning("Skipping unreadable config file", path=str(path), error=str(e))

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                if not hasattr(config_obj, key):
                    raise ConfigError(f"Unknown config key: {prefix}{key}")
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, f"{prefix}{key}.")
                else:
                    raise ConfigError(f"Expected a mapping for section: {prefix}{key}")

        apply_to_config(self._config, data, "")

    def _resolve(self, path: str) -> Any:
        obj: Any = self._config
        for part in path.split("."):
            if not part or part.startswith("_") or not hasattr(obj, part):
                raise ConfigError(f"Invalid config path: {path}")
            obj = getattr(obj, part)
        return obj

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: config.set("sale.max_per_wallet", 5)
        """
        attr = self._resolve(path)
        if isinstance(attr, ConfigValue):
            attr.set(value)
        else:
            raise ConfigError(f"Invalid config path: {path}")

    def get(self, path: str) -> Any:
        """
        Get a configuration value by path.

        Example: config.get("sale.max_per_wallet")
        """
        obj = self._resolve(path)
        if isinstance(obj, ConfigValue):
            return obj.get()
        if hasattr(obj, "__dataclass_fields__"):
            return {k: getattr(obj, k).get() for k in obj.__dataclass_fields__}
        return obj

    def watch(self, callback: Callable[[NexusConfig], None]) -> None:
        """Register a callback for configuration changes."""
        self._watchers.append(callback)

    def reload(self) -> None:
        """Reload configuration from all loaded files."""
        for path in self._config_paths:
            if path.exists():
                self.load_from_file(path)

        for watcher in self._watchers:
            watcher(self._config)

    def validate(self) -> List[str]:
        """
        Validate all configuration values.

        Returns list of validation errors.
        """
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get()
                    if obj.validator and not obj.validator(value):
                        errors.append(f"{path}: validation failed for value {value}")
                except (ValueError, TypeError, ValidationError) as e:
                    errors.append(f"{path}: {e}")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._config)
        return errors

    def export_schema(self) -> Dict[str, Any]:
        """Export configuration schema for documentation."""
        schema: Dict[str, Any] = {"properties": {}}

        def extract_schema(obj: Any, properties: Dict[str, Any]) -> None:
            if isinstance(obj, ConfigValue):
                properties["type"] = type(obj.default).__name__
                properties["default"] = str(obj.default)
                properties["description"] = obj.description
                if obj.env_var:
                    properties["env_var"] = obj.env_var
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    properties[field_name] = {}
                    extract_schema(getattr(obj, field_name), properties[field_name])

        extract_schema(self._config, schema["properties"])
        return schema


def get_config() -> NexusConfig:
    """Get the current NEXUS configuration."""
    return ConfigManager().config


def get_config_manager() -> ConfigManager:
    """Get the configuration manager instance."""
    return ConfigManager()


def reset_config_manager() -> None:
    """Drop the singleton so the next access starts from defaults."""
    with ConfigManager._lock:
        ConfigManager._instance = None
