"""
darkflow/config.py

Configuration: defaults, overlaid by an optional YAML file, overlaid by
environment variables.

    rpc_url         KEEPER_RPC_URL, then ANCHOR_PROVIDER_URL
    wallet_path     ANCHOR_WALLET, then WALLET
    program_id      DARKFLOW_PROGRAM_ID
    jupiter_program_id  JUPITER_PROGRAM_ID
    network_mode    DARKFLOW_NETWORK_MODE  (pins mainnet/devnet/localhost)
    log_level       DARKFLOW_LOG_LEVEL

Every problem found here is a ConfigurationError: fatal at startup.
"""

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

import yaml
from solders.pubkey import Pubkey

from darkflow.core.exceptions import ConfigurationError, ValidationError
from darkflow.core.models import NetworkMode, TokenInfo, TokenRegistry
from darkflow.core.network import resolve_network_mode, validate_endpoint


DEFAULT_RPC_URL     = "https://api.devnet.solana.com"
DEFAULT_WALLET_PATH = "./test-wallet.json"
DEFAULT_PROGRAM_ID  = "5XQ8wk4T8haHVRBFF1XBnNUUifyXiv4WUTvnGC2P4oVo"
DEFAULT_JUPITER_PROGRAM_ID = "JUP6LkbZbjS1jKKwapdHNy74zcZ3tLUZoi5QNyVTaV4"
DEFAULT_JUPITER_API_URL    = "https://lite-api.jup.ag/swap/v1"

# env var -> field, first match wins
_ENV_OVERRIDES = (
    (("KEEPER_RPC_URL", "ANCHOR_PROVIDER_URL"), "rpc_url"),
    (("ANCHOR_WALLET", "WALLET"), "wallet_path"),
    (("DARKFLOW_PROGRAM_ID",), "program_id"),
    (("JUPITER_PROGRAM_ID",), "jupiter_program_id"),
    (("DARKFLOW_NETWORK_MODE",), "network_mode"),
    (("DARKFLOW_LOG_LEVEL",), "log_level"),
)

# accepted value types per field; None allowed only where listed
_FIELD_TYPES = {
    "rpc_url":            str,
    "ws_url":             str,
    "wallet_path":        str,
    "program_id":         str,
    "jupiter_program_id": str,
    "jupiter_api_url":    str,
    "network_mode":       str,
    "log_level":          str,
    "poll_interval":      (int, float),
    "max_workers":        int,
    "shutdown_timeout":   (int, float),
    "slippage_bps":       int,
    "tokens":             list,
}
_OPTIONAL_FIELDS = frozenset({"ws_url", "network_mode", "tokens"})


@dataclass(frozen=True)
class DarkflowConfig:
    rpc_url:            str = DEFAULT_RPC_URL
    ws_url:             Optional[str] = None
    wallet_path:        str = DEFAULT_WALLET_PATH
    program_id:         str = DEFAULT_PROGRAM_ID
    jupiter_program_id: str = DEFAULT_JUPITER_PROGRAM_ID
    jupiter_api_url:    str = DEFAULT_JUPITER_API_URL
    network_mode:       Optional[str] = None
    log_level:          str = "INFO"
    poll_interval:      float = 5.0
    max_workers:        int = 4
    shutdown_timeout:   float = 10.0
    slippage_bps:       int = 50
    tokens:             Optional[List[Dict[str, Any]]] = field(default=None, hash=False)

    # ── Loading ───────────────────────────────────────────────

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "DarkflowConfig":
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigurationError("Unknown configuration keys", {"keys": ", ".join(unknown)})
        try:
            return cls(**dict(data))
        except TypeError as exc:
            raise ConfigurationError(f"Invalid configuration: {exc}") from exc

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "DarkflowConfig":
        path = Path(path).expanduser()
        if not path.exists():
            raise ConfigurationError("Config file not found", {"path": str(path)})
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigurationError(f"Failed to read config: {exc}", {"path": str(path)}) from exc
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ConfigurationError("Config file must hold a mapping", {"path": str(path)})
        return cls.from_mapping(data)

    def with_env(self, environ: Optional[Mapping[str, str]] = None) -> "DarkflowConfig":
        environ = os.environ if environ is None else environ
        updates: Dict[str, str] = {}
        for names, field_name in _ENV_OVERRIDES:
            for name in names:
                value = environ.get(name)
                if value:
                    updates[field_name] = value
                    break
        return replace(self, **updates)

    @classmethod
    def load(
        cls,
        path:    Optional[Union[str, Path]] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "DarkflowConfig":
        """Defaults < YAML file < environment. Validated before returning."""
        config = cls.from_yaml(path) if path else cls()
        config = config.with_env(environ)
        config.validate()
        return config

    # ── Validation / derived values ───────────────────────────

    def validate(self) -> None:
        self._check_types()
        validate_endpoint(self.rpc_url)
        if self.ws_url:
            validate_endpoint(self.ws_url, websocket=True)
        # each raises ConfigurationError when invalid
        self.program_pubkey
        self.jupiter_program_pubkey
        self.resolved_network_mode
        self.registry()
        if self.poll_interval <= 0 or self.shutdown_timeout <= 0:
            raise ConfigurationError("Intervals must be positive")
        if self.max_workers < 1:
            raise ConfigurationError("max_workers must be at least 1")
        if not 0 <= self.slippage_bps <= 10_000:
            raise ConfigurationError("slippage_bps out of range", {"slippage_bps": self.slippage_bps})

    def _check_types(self) -> None:
        for name, expected in _FIELD_TYPES.items():
            value = getattr(self, name)
            if value is None and name in _OPTIONAL_FIELDS:
                continue
            # bool is an int subclass
            if isinstance(value, bool) or not isinstance(value, expected):
                raise ConfigurationError(f"Invalid type for {name}", {name: repr(value)})
        for entry in self.tokens or ():
            if not isinstance(entry, Mapping):
                raise ConfigurationError("Token entries must be mappings", {"entry": repr(entry)})

    @staticmethod
    def _pubkey(name: str, value: str) -> Pubkey:
        try:
            return Pubkey.from_string(value)
        except ValueError:
            raise ConfigurationError("Invalid public key", {name: value}) from None

    @property
    def program_pubkey(self) -> Pubkey:
        return self._pubkey("program_id", self.program_id)

    @property
    def jupiter_program_pubkey(self) -> Pubkey:
        return self._pubkey("jupiter_program_id", self.jupiter_program_id)

    @property
    def resolved_network_mode(self) -> NetworkMode:
        return resolve_network_mode(self.rpc_url, self.network_mode)

    @property
    def resolved_wallet_path(self) -> Path:
        return Path(self.wallet_path).expanduser()

    def registry(self) -> TokenRegistry:
        if not self.tokens:
            return TokenRegistry.default()
        try:
            return TokenRegistry(TokenInfo.from_dict(entry) for entry in self.tokens)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid token registry: {exc.message}", exc.details) from exc
