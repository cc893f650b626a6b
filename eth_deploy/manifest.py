"""Deployment manifest.

Record deployed contract addresses on disk, so that a deployment can be re-run
and already completed stages are skipped.

The manifest is a JSON file, keyed by chain id and a logical contract name:

.. code-block:: json

    {
        "1": {
            "move": {
                "address": "0x...",
                "block_number": 19000000,
                "deployer": "0x...",
                "tx_hash": "0x..."
            }
        }
    }

- Entries are never mutated in place: the whole file is rewritten atomically,
  see :py:func:`eth_deploy.utils.atomic_write_json`

- Saving a different address for an existing name needs an explicit override
"""

import logging
from pathlib import Path
from typing import NamedTuple

from eth_typing import HexAddress
from web3 import Web3

from eth_deploy.utils import atomic_write_json, read_json, wait_other_writers


logger = logging.getLogger(__name__)


ChainId = int

ContractName = str


class ManifestConflictError(Exception):
    """The manifest already has a different address for the name."""


class ManifestEntry(NamedTuple):
    """A single deployed contract in the manifest."""

    chain_id: ChainId

    name: ContractName

    address: HexAddress

    #: Deployment transaction, if known
    tx_hash: str | None = None

    #: Block of the deployment transaction, if known
    block_number: int | None = None

    #: Who broadcasted the deployment, if known
    deployer: str | None = None

    def as_json_friendly_dict(self) -> dict:
        data = {"address": self.address}
        for key in ("tx_hash", "block_number", "deployer"):
            value = getattr(self, key)
            if value is not None:
                data[key] = value
        return data


class DeploymentManifest:
    """Chain-scoped contract name -> address store, backed by a JSON file.

    Pass the same instance to everything that needs it. There is no global state.

    Example:

    .. code-block:: python

        manifest = DeploymentManifest(Path("deployments/manifest.json"))
        entries = manifest.load(web3.eth.chain_id)
        if "move" not in entries:
            ...
            manifest.save(web3.eth.chain_id, "move", token_address)
    """

    def __init__(self, path: Path | str):
        self.path = Path(path).absolute()

    def __repr__(self):
        return f"<DeploymentManifest {self.path}>"

    def _read_chain(self, data: dict, chain_id: ChainId) -> dict[ContractName, ManifestEntry]:
        entries = {}
        for name, record in data.get(str(chain_id), {}).items():
            entries[name] = ManifestEntry(
                chain_id=chain_id,
                name=name,
                address=Web3.to_checksum_address(record["address"]),
                tx_hash=record.get("tx_hash"),
                block_number=record.get("block_number"),
                deployer=record.get("deployer"),
            )
        return entries

    def load(self, chain_id: ChainId) -> dict[ContractName, ManifestEntry]:
        """Read all entries of a chain.

        :return:
            Name -> entry. Empty if nothing has been deployed yet.
        """
        assert type(chain_id) == int, f"Chain id must be int, got {type(chain_id)}"
        return self._read_chain(read_json(self.path), chain_id)

    def get(self, chain_id: ChainId, name: ContractName) -> ManifestEntry | None:
        return self.load(chain_id).get(name)

    def save(
        self,
        chain_id: ChainId,
        name: ContractName,
        address: HexAddress | str,
        override=False,
        tx_hash: str | None = None,
        block_number: int | None = None,
        deployer: str | None = None,
    ) -> ManifestEntry:
        """Record a deployed contract.

        - Saving the same name and address again does nothing

        - Saving a different address for an existing name fails, unless ``override`` is set

        :param override:
            Operator has decided to replace the recorded address.

        :raise ManifestConflictError:
            A different address is already recorded.
        """
        assert type(chain_id) == int, f"Chain id must be int, got {type(chain_id)}"
        address = Web3.to_checksum_address(address)
        entry = ManifestEntry(
            chain_id=chain_id,
            name=name,
            address=address,
            tx_hash=tx_hash,
            block_number=block_number,
            deployer=deployer,
        )

        with wait_other_writers(self.path):
            data = read_json(self.path)
            existing = self._read_chain(data, chain_id).get(name)

            if existing is not None:
                if existing.address == address:
                    logger.info("Manifest already has %s at %s on chain %d", name, address, chain_id)
                    return existing

                if not override:
                    raise ManifestConflictError(f"Manifest {self.path} already has {name} at {existing.address} on chain {chain_id}, refusing to overwrite it with {address}. Use override to replace.")

                logger.warning("Overriding %s on chain %d: %s -> %s", name, chain_id, existing.address, address)

            data.setdefault(str(chain_id), {})[name] = entry.as_json_friendly_dict()
            atomic_write_json(self.path, data)

        logger.info("Manifest: %s at %s on chain %d", name, address, chain_id)
        return entry

    def remove(self, chain_id: ChainId, name: ContractName) -> bool:
        """Remove an entry, for operator repairs.

        :return:
            True if there was an entry
        """
        with wait_other_writers(self.path):
            data = read_json(self.path)
            chain_data = data.get(str(chain_id), {})
            if name not in chain_data:
                return False
            del chain_data[name]
            if not chain_data:
                del data[str(chain_id)]
            atomic_write_json(self.path, data)

        logger.info("Removed %s from manifest on chain %d", name, chain_id)
        return True
