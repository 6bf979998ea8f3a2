"""
Custody Configuration

Settings come from YAML files, environment variables and runtime overrides,
and are resolved once into a frozen ``CustodyConfig`` that is handed to the
state machine at construction. Nothing in the custody core reads the
environment itself.

Configuration Sources (in order of precedence):
    1. Environment variables (CUSTODY_*)
    2. Runtime overrides (ConfigManager.set)
    3. Config files, later files overriding earlier ones
    4. Default values

Example custody.yaml:

    deployment:
      package_id: "0xabc..."
      mint_cap_id: "0xdef..."
    submission:
      gas_budget: 100000000
    ledger:
      commit_timeout_seconds: 30

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Callable, ClassVar, Dict, Generic, List, Mapping, Optional, Tuple, TypeVar, Union

import yaml

from custody.errors import ConfigError

T = TypeVar("T")


class ConfigValidationError(ConfigError):
    """Configuration validation error."""
    pass


@dataclass
class ConfigValue(Generic[T]):
    """
    A single configuration value with metadata.

    Supports default values, environment variable binding,
    validation, and redaction of secrets.
    """
    default: T
    env_var: Optional[str] = None
    description: str = ""
    validator: Optional[Callable[[T], bool]] = None
    secret: bool = False
    required: bool = False
    _value: Optional[T] = field(default=None, repr=False)

    def get(self, environ: Optional[Mapping[str, str]] = None) -> T:
        env = os.environ if environ is None else environ
        if self.env_var and self.env_var in env:
            return self._coerce(env[self.env_var])
        return self._value if self._value is not None else self.default

    def set(self, value: T) -> None:
        if self.validator and not self.validator(value):
            shown = "<redacted>" if self.secret else value
            raise ConfigValidationError(f"Invalid value for config: {shown}")
        self._value = value

    def _coerce(self, value: str) -> T:
        """Coerce string value to target type."""
        target_type = type(self.default)

        if target_type == bool:
            return value.lower() in ("true", "1", "yes", "on")  # type: ignore
        elif target_type == int:
            return int(value)  # type: ignore
        elif target_type == float:
            return float(value)  # type: ignore
        else:
            return value  # type: ignore


def _hex_id(value: str) -> bool:
    return value == "" or (value.startswith("0x") and len(value) > 2)


@dataclass
class DeploymentConfig:
    """On-ledger identifiers of the deployed packages and capabilities."""
    package_id: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="CUSTODY_PACKAGE_ID",
        description="Package declaring the asset type",
        validator=_hex_id,
        required=True,
    ))
    kiosk_package_id: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="CUSTODY_OB_KIOSK_PACKAGE_ID",
        description="Kiosk package (owner tokens, deposit)",
        validator=_hex_id,
        required=True,
    ))
    nft_protocol_package_id: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="CUSTODY_NFT_PROTOCOL_PACKAGE_ID",
        description="NFT protocol package (mint caps, transfer tokens)",
        validator=_hex_id,
        required=True,
    ))
    mint_cap_id: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="CUSTODY_MINT_CAP_ID",
        description="Mint capability held by the issuer",
        validator=_hex_id,
        required=True,
    ))
    publisher_id: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="CUSTODY_PUBLISHER_ID",
        description="Publisher object of the asset package",
        validator=_hex_id,
        required=True,
    ))
    withdraw_policy_id: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="CUSTODY_WITHDRAW_POLICY_ID",
        description="Withdraw policy guarding kiosk withdrawals",
        validator=_hex_id,
    ))
    asset_module: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="battle_pass",
        env_var="CUSTODY_ASSET_MODULE",
        description="Module declaring the asset struct",
    ))
    asset_struct: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="BattlePass",
        env_var="CUSTODY_ASSET_STRUCT",
        description="Asset struct name",
    ))


@dataclass
class KeysConfig:
    """Base64 exported secret keys of the three custody domains."""
    issuer_private_key: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="CUSTODY_ISSUER_PRIVATE_KEY",
        description="Issuer secret key",
        secret=True,
        required=True,
    ))
    custodial_wallet_private_key: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="CUSTODY_CUSTODIAL_WALLET_PRIVATE_KEY",
        description="Custodial wallet secret key",
        secret=True,
        required=True,
    ))
    non_custodial_wallet_private_key: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="CUSTODY_NON_CUSTODIAL_WALLET_PRIVATE_KEY",
        description="Non-custodial wallet secret key",
        secret=True,
    ))


@dataclass
class SubmissionConfig:
    """Fee and sponsorship strategy injected into signers."""
    gas_budget: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=100_000_000,
        env_var="CUSTODY_GAS_BUDGET",
        description="Gas budget per operation",
        validator=lambda x: x > 0,
    ))
    sponsor_address: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="",
        env_var="CUSTODY_SPONSOR_ADDRESS",
        description="Gas owner for sponsored operations (empty: sender pays)",
        validator=_hex_id,
    ))


@dataclass
class LedgerConfig:
    """Bounded waits and reconciliation."""
    commit_timeout_seconds: ConfigValue[float] = field(default_factory=lambda: ConfigValue(
        default=30.0,
        env_var="CUSTODY_COMMIT_TIMEOUT",
        description="Seconds to wait for a committed outcome",
        validator=lambda x: x > 0,
    ))
    max_resubmits: ConfigValue[int] = field(default_factory=lambda: ConfigValue(
        default=1,
        env_var="CUSTODY_MAX_RESUBMITS",
        description="Resubmissions of an operation found uncommitted after an indeterminate outcome",
        validator=lambda x: x >= 0,
    ))


@dataclass
class ObservabilityConfig:
    log_level: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="info",
        env_var="CUSTODY_LOG_LEVEL",
        description="Log level (debug, info, warning, error)",
        validator=lambda x: x in ("debug", "info", "warning", "error", "critical"),
    ))
    log_format: ConfigValue[str] = field(default_factory=lambda: ConfigValue(
        default="json",
        env_var="CUSTODY_LOG_FORMAT",
        description="Log format (json, text)",
        validator=lambda x: x in ("json", "text"),
    ))


@dataclass
class CustodySettings:
    """Root of the mutable settings tree."""
    deployment: DeploymentConfig = field(default_factory=DeploymentConfig)
    keys: KeysConfig = field(default_factory=KeysConfig)
    submission: SubmissionConfig = field(default_factory=SubmissionConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)


# =============================================================================
# RESOLVED CONFIGURATION
# =============================================================================

@dataclass(frozen=True)
class ObjectTypes:
    """Declared type strings of every object the custody core decodes."""
    package_id: str
    kiosk_package_id: str
    nft_protocol_package_id: str
    asset_module: str = "battle_pass"
    asset_struct: str = "BattlePass"

    @property
    def asset_type(self) -> str:
        return f"{self.package_id}::{self.asset_module}::{self.asset_struct}"

    @property
    def unlock_ticket_type(self) -> str:
        return f"{self.package_id}::{self.asset_module}::UnlockUpdatesTicket"

    @property
    def stat_key_type(self) -> str:
        return f"{self.package_id}::stats::StatKey"

    @property
    def game_asset_id_key_type(self) -> str:
        return f"{self.package_id}::stats::GameAssetIDKey"

    @property
    def mint_cap_type(self) -> str:
        return f"{self.nft_protocol_package_id}::mint_cap::MintCap"

    @property
    def transfer_token_type(self) -> str:
        return f"{self.nft_protocol_package_id}::transfer_token::TransferToken"

    @property
    def owner_token_type(self) -> str:
        return f"{self.kiosk_package_id}::ob_kiosk::OwnerToken"

    @property
    def kiosk_type(self) -> str:
        return "0x2::kiosk::Kiosk"

    @property
    def publisher_type(self) -> str:
        return "0x2::package::Publisher"


@dataclass(frozen=True)
class CustodyConfig:
    """Immutable configuration snapshot consumed by the custody core."""
    package_id: str = ""
    kiosk_package_id: str = ""
    nft_protocol_package_id: str = ""
    mint_cap_id: str = ""
    publisher_id: str = ""
    withdraw_policy_id: str = ""
    asset_module: str = "battle_pass"
    asset_struct: str = "BattlePass"
    issuer_private_key: str = field(default="", repr=False)
    custodial_wallet_private_key: str = field(default="", repr=False)
    non_custodial_wallet_private_key: str = field(default="", repr=False)
    gas_budget: int = 100_000_000
    sponsor_address: str = ""
    commit_timeout_seconds: float = 30.0
    max_resubmits: int = 1
    log_level: str = "info"
    log_format: str = "json"

    REQUIRED: ClassVar[Tuple[str, ...]] = (
        "package_id",
        "kiosk_package_id",
        "nft_protocol_package_id",
        "mint_cap_id",
        "publisher_id",
    )

    SECRETS: ClassVar[Tuple[str, ...]] = (
        "issuer_private_key",
        "custodial_wallet_private_key",
        "non_custodial_wallet_private_key",
    )

    @property
    def types(self) -> ObjectTypes:
        return ObjectTypes(
            package_id=self.package_id,
            kiosk_package_id=self.kiosk_package_id,
            nft_protocol_package_id=self.nft_protocol_package_id,
            asset_module=self.asset_module,
            asset_struct=self.asset_struct,
        )

    def missing(self, *names: str) -> List[str]:
        return [n for n in (names or self.REQUIRED) if not getattr(self, n)]

    def require(self, *names: str) -> "CustodyConfig":
        """Raise ``ConfigError`` naming every empty required field."""
        absent = self.missing(*names)
        if absent:
            raise ConfigError(f"missing required configuration: {', '.join(absent)}")
        return self

    def to_dict(self, redact: bool = True) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if redact and f.name in self.SECRETS and value:
                value = "<redacted>"
            out[f.name] = value
        return out


# =============================================================================
# MANAGER
# =============================================================================

class ConfigManager:
    """Loads settings from files and overrides and resolves them."""

    DEFAULT_PATHS = (
        Path("custody.yaml"),
        Path("config/custody.yaml"),
    )

    def __init__(self, environ: Optional[Mapping[str, str]] = None):
        self._settings = CustodySettings()
        self._config_paths: List[Path] = []
        self._environ = environ

    @property
    def settings(self) -> CustodySettings:
        return self._settings

    def load_from_file(self, path: Union[str, Path]) -> None:
        """Load configuration from a YAML file."""
        path = Path(path)
        if not path.exists():
            raise ConfigError(f"Configuration file not found: {path}")

        with open(path) as f:
            data = yaml.safe_load(f)

        if data is None:
            return
        if not isinstance(data, dict):
            raise ConfigError(f"Configuration file must contain a mapping: {path}")
        self._apply_dict(data)
        self._config_paths.append(path)

    def load_defaults(self) -> None:
        for path in self.DEFAULT_PATHS:
            if path.exists():
                self.load_from_file(path)

    def _apply_dict(self, data: Dict[str, Any]) -> None:
        def apply_to_config(config_obj: Any, values: Dict[str, Any], prefix: str) -> None:
            for key, value in values.items():
                if not hasattr(config_obj, key):
                    raise ConfigError(f"Unknown configuration key: {prefix}{key}")
                attr = getattr(config_obj, key)
                if isinstance(attr, ConfigValue):
                    attr.set(value)
                elif hasattr(attr, "__dataclass_fields__") and isinstance(value, dict):
                    apply_to_config(attr, value, f"{prefix}{key}.")

        apply_to_config(self._settings, data, "")

    def set(self, path: str, value: Any) -> None:
        """
        Set a configuration value by path.

        Example: manager.set("submission.gas_budget", 5000000)
        """
        obj: Any = self._settings
        parts = path.split(".")
        for part in parts[:-1]:
            obj = getattr(obj, part, None)
            if obj is None:
                raise ConfigError(f"Invalid config path: {path}")

        attr = getattr(obj, parts[-1], None)
        if not isinstance(attr, ConfigValue):
            raise ConfigError(f"Invalid config path: {path}")
        attr.set(value)

    def get(self, path: str) -> Any:
        obj: Any = self._settings
        for part in path.split("."):
            obj = getattr(obj, part, None)
            if obj is None:
                raise ConfigError(f"Invalid config path: {path}")
        if isinstance(obj, ConfigValue):
            return obj.get(self._environ)
        return obj

    def validate(self) -> List[str]:
        """Validate every value, returning one message per problem."""
        errors: List[str] = []

        def validate_config(obj: Any, path: str = "") -> None:
            if isinstance(obj, ConfigValue):
                try:
                    value = obj.get(self._environ)
                except ValueError as e:
                    errors.append(f"{path}: {e}")
                    return
                if obj.validator and not obj.validator(value):
                    shown = "<redacted>" if obj.secret else value
                    errors.append(f"{path}: validation failed for value {shown}")
                if obj.required and not value:
                    errors.append(f"{path}: required value is not set")
            elif hasattr(obj, "__dataclass_fields__"):
                for field_name in obj.__dataclass_fields__:
                    field_path = f"{path}.{field_name}" if path else field_name
                    validate_config(getattr(obj, field_name), field_path)

        validate_config(self._settings)
        return errors

    def resolve(self) -> CustodyConfig:
        """Freeze the current settings into a ``CustodyConfig``."""
        s = self._settings
        env = self._environ
        try:
            return CustodyConfig(
                package_id=s.deployment.package_id.get(env),
                kiosk_package_id=s.deployment.kiosk_package_id.get(env),
                nft_protocol_package_id=s.deployment.nft_protocol_package_id.get(env),
                mint_cap_id=s.deployment.mint_cap_id.get(env),
                publisher_id=s.deployment.publisher_id.get(env),
                withdraw_policy_id=s.deployment.withdraw_policy_id.get(env),
                asset_module=s.deployment.asset_module.get(env),
                asset_struct=s.deployment.asset_struct.get(env),
                issuer_private_key=s.keys.issuer_private_key.get(env),
                custodial_wallet_private_key=s.keys.custodial_wallet_private_key.get(env),
                non_custodial_wallet_private_key=s.keys.non_custodial_wallet_private_key.get(env),
                gas_budget=s.submission.gas_budget.get(env),
                sponsor_address=s.submission.sponsor_address.get(env),
                commit_timeout_seconds=s.ledger.commit_timeout_seconds.get(env),
                max_resubmits=s.ledger.max_resubmits.get(env),
                log_level=s.observability.log_level.get(env),
                log_format=s.observability.log_format.get(env),
            )
        except ValueError as e:
            raise ConfigError(f"Invalid environment value: {e}") from e

    def to_yaml(self, redact: bool = True) -> str:
        return yaml.safe_dump(self.resolve().to_dict(redact=redact), default_flow_style=False, sort_keys=False)
