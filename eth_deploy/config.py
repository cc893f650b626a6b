"""Deployment configuration from environment variables.

Deployment scripts are configured with environment variables,
so the same script runs against a local test chain, a testnet and the mainnet.

Required:

- ``ETH_NETWORK``: network name, e.g. ``mainnet`` or ``sepolia``

- ``ETH_EXECUTION_RPC``: execution layer JSON-RPC URL the light client verifies

- ``ETH_CONSENSUS_RPC``: consensus layer (beacon) RPC URL

- ``ETH_CHECKPOINT``: weak subjectivity checkpoint block root the light client syncs from

- ``TIMELOCK_MIN_DELAY``: governance policy floor for timelock delays, in seconds

- ``SAFE_THRESHOLD``: how many Safe owners must sign

Optional:

- ``SAFE_ADDRESS``, ``DEPLOYMENT_FACTORY``, ``TIMELOCK_ADDRESS``

- ``MANIFEST_PATH``: default ``deployments.json``

- ``DEPLOY_MODE``: ``direct`` or ``proposal``, default ``proposal``

- ``CONFIRMATION_MAX_POLLS``: default 60

Example:

.. code-block:: shell

    export ETH_NETWORK=sepolia
    export ETH_EXECUTION_RPC=http://localhost:8545
    export ETH_CONSENSUS_RPC=https://beacon.example.com
    export ETH_CHECKPOINT=0x...
    export TIMELOCK_MIN_DELAY=86400
    export SAFE_THRESHOLD=2
    python scripts/deploy-deterministic.py
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3


logger = logging.getLogger(__name__)


#: Deployment modes accepted in ``DEPLOY_MODE``
DEPLOY_MODES = ("direct", "proposal")


class ConfigError(Exception):
    """Missing or invalid configuration value."""


def _get_required(environ: Mapping[str, str], name: str) -> str:
    value = environ.get(name)
    if value is None or not value.strip():
        raise ConfigError(f"{name} is not set")
    return value.strip()


def _get_optional(environ: Mapping[str, str], name: str) -> str | None:
    value = environ.get(name)
    if value is None or not value.strip():
        return None
    return value.strip()


def _parse_int(name: str, value: str, minimum: int = 0) -> int:
    try:
        parsed = int(value)
    except ValueError as e:
        raise ConfigError(f"{name} must be an integer, got {value!r}") from e
    if parsed < minimum:
        raise ConfigError(f"{name} must be at least {minimum}, got {value!r}")
    return parsed


def _parse_address(name: str, value: str | None) -> HexAddress | None:
    if value is None:
        return None
    if not Web3.is_address(value):
        raise ConfigError(f"{name} is not an Ethereum address: {value!r}")
    return Web3.to_checksum_address(value)


def _parse_url(name: str, value: str) -> str:
    if not value.startswith(("http://", "https://")):
        raise ConfigError(f"{name} must be a http:// or https:// URL, got {value!r}")
    return value


def _parse_checkpoint(name: str, value: str) -> str:
    try:
        raw = HexBytes(value)
    except ValueError as e:
        raise ConfigError(f"{name} must be a 0x prefixed 32 bytes hex string, got {value!r}") from e
    if not value.startswith("0x") or len(raw) != 32:
        raise ConfigError(f"{name} must be a 0x prefixed 32 bytes hex string, got {value!r}")
    return value


@dataclass(frozen=True, slots=True)
class DeploymentConfig:
    """Validated deployment configuration."""

    #: Network name
    network: str

    #: Execution layer JSON-RPC URL
    execution_rpc: str

    #: Consensus layer RPC URL
    consensus_rpc: str

    #: Light client checkpoint
    checkpoint: str

    #: Timelock policy floor, seconds
    timelock_min_delay: int

    #: Safe signing threshold
    safe_threshold: int

    safe_address: HexAddress | None = None

    #: CREATE3 factory
    factory: HexAddress | None = None

    timelock_address: HexAddress | None = None

    manifest_path: Path = Path("deployments.json")

    #: ``direct`` or ``proposal``
    mode: str = "proposal"

    confirmation_max_polls: int = 60

    @staticmethod
    def from_env(environ: Mapping[str, str] = os.environ) -> "DeploymentConfig":
        """Read the configuration from environment variables.

        All values are validated before any chain access happens.

        :raise ConfigError:
            Naming the variable that is missing or invalid
        """
        network = _get_required(environ, "ETH_NETWORK")
        execution_rpc = _parse_url("ETH_EXECUTION_RPC", _get_required(environ, "ETH_EXECUTION_RPC"))
        consensus_rpc = _parse_url("ETH_CONSENSUS_RPC", _get_required(environ, "ETH_CONSENSUS_RPC"))
        checkpoint = _parse_checkpoint("ETH_CHECKPOINT", _get_required(environ, "ETH_CHECKPOINT"))
        timelock_min_delay = _parse_int("TIMELOCK_MIN_DELAY", _get_required(environ, "TIMELOCK_MIN_DELAY"))
        safe_threshold = _parse_int("SAFE_THRESHOLD", _get_required(environ, "SAFE_THRESHOLD"), minimum=1)

        mode = _get_optional(environ, "DEPLOY_MODE") or "proposal"
        if mode not in DEPLOY_MODES:
            raise ConfigError(f"DEPLOY_MODE must be one of {', '.join(DEPLOY_MODES)}, got {mode!r}")

        max_polls = _get_optional(environ, "CONFIRMATION_MAX_POLLS")

        config = DeploymentConfig(
            network=network,
            execution_rpc=execution_rpc,
            consensus_rpc=consensus_rpc,
            checkpoint=checkpoint,
            timelock_min_delay=timelock_min_delay,
            safe_threshold=safe_threshold,
            safe_address=_parse_address("SAFE_ADDRESS", _get_optional(environ, "SAFE_ADDRESS")),
            factory=_parse_address("DEPLOYMENT_FACTORY", _get_optional(environ, "DEPLOYMENT_FACTORY")),
            timelock_address=_parse_address("TIMELOCK_ADDRESS", _get_optional(environ, "TIMELOCK_ADDRESS")),
            manifest_path=Path(_get_optional(environ, "MANIFEST_PATH") or "deployments.json"),
            mode=mode,
            confirmation_max_polls=_parse_int("CONFIRMATION_MAX_POLLS", max_polls, minimum=1) if max_polls else 60,
        )

        # RPC URLs may carry API keys
        logger.info("Loaded deployment config for network %s, mode %s, Safe %s, threshold %d", config.network, config.mode, config.safe_address, config.safe_threshold)
        return config

    def require_address(self, name: str) -> HexAddress:
        """Get an optional address that the current operation needs.

        :param name:
            ``safe_address``, ``factory`` or ``timelock_address``

        :raise ConfigError:
            If the address was not configured
        """
        env_names = {
            "safe_address": "SAFE_ADDRESS",
            "factory": "DEPLOYMENT_FACTORY",
            "timelock_address": "TIMELOCK_ADDRESS",
        }
        assert name in env_names, f"Unknown address field {name}"
        value = getattr(self, name)
        if value is None:
            raise ConfigError(f"{env_names[name]} is not set")
        return value
