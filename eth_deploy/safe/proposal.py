"""Safe transaction proposals.

In production the deployment does not hold the Safe owner keys.
Instead we write the unsigned Safe transaction and its hash into a JSON file,
and the owners sign it in a separate signing ceremony, e.g. in the Safe web UI.

The file format is flat and versioned:

.. code-block:: json

    {
        "version": 1,
        "chain_id": 1,
        "safe_address": "0x...",
        "to": "0x...",
        "value": "0",
        "data": "0x...",
        "operation": 0,
        "safe_tx_gas": "0",
        "base_gas": "0",
        "gas_price": "0",
        "gas_token": "0x0000000000000000000000000000000000000000",
        "refund_receiver": "0x0000000000000000000000000000000000000000",
        "nonce": "3",
        "safe_tx_hash": "0x...",
        "description": "Deploy move"
    }

uint256 values are written as decimal strings, so JavaScript readers
do not lose precision.
"""

import logging
from dataclasses import asdict, dataclass
from pathlib import Path

from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3

from eth_deploy.safe.tx import SafeAuthorizationRequest, SafeOperation, hash_safe_tx
from eth_deploy.utils import atomic_write_json, read_json, wait_other_writers


logger = logging.getLogger(__name__)


#: Current file format version
PROPOSAL_VERSION = 1

_UINT_FIELDS = ("value", "safe_tx_gas", "base_gas", "gas_price", "nonce")


class ProposalFormatError(Exception):
    """Proposal file cannot be read back."""


class ProposalConflictError(Exception):
    """Another proposal is waiting for the same Safe nonce."""


@dataclass(frozen=True, slots=True)
class SafeTransactionProposal:
    """Unsigned Safe transaction waiting for an offline signing ceremony."""

    chain_id: int
    safe_address: HexAddress
    to: HexAddress
    value: int
    data: str
    operation: int
    safe_tx_gas: int
    base_gas: int
    gas_price: int
    gas_token: HexAddress
    refund_receiver: HexAddress
    nonce: int

    #: EIP-712 hash the owners must sign, for cross-checking in the wallet UI
    safe_tx_hash: str

    #: Human readable note for the signers
    description: str = ""

    version: int = PROPOSAL_VERSION

    @staticmethod
    def create(
        request: SafeAuthorizationRequest,
        chain_id: int,
        safe_address: HexAddress | str,
        description: str = "",
    ) -> "SafeTransactionProposal":
        """Create a proposal from a Safe transaction.

        The Safe transaction hash is computed here, so the signers can compare it
        against what their wallet shows.
        """
        safe_tx_hash = hash_safe_tx(request, chain_id, safe_address)
        return SafeTransactionProposal(
            chain_id=chain_id,
            safe_address=Web3.to_checksum_address(safe_address),
            to=request.to,
            value=request.value,
            data="0x" + request.data.hex(),
            operation=int(request.operation),
            safe_tx_gas=request.safe_tx_gas,
            base_gas=request.base_gas,
            gas_price=request.gas_price,
            gas_token=request.gas_token,
            refund_receiver=request.refund_receiver,
            nonce=request.nonce,
            safe_tx_hash="0x" + bytes(safe_tx_hash).hex(),
            description=description,
        )

    def get_request(self) -> SafeAuthorizationRequest:
        """Rebuild the Safe transaction."""
        return SafeAuthorizationRequest(
            to=self.to,
            value=self.value,
            data=bytes(HexBytes(self.data)),
            operation=SafeOperation(self.operation),
            safe_tx_gas=self.safe_tx_gas,
            base_gas=self.base_gas,
            gas_price=self.gas_price,
            gas_token=self.gas_token,
            refund_receiver=self.refund_receiver,
            nonce=self.nonce,
        )

    def as_json_friendly_dict(self) -> dict:
        data = asdict(self)
        for name in _UINT_FIELDS:
            data[name] = str(data[name])
        return data

    def write(self, path: Path) -> Path:
        """Write the proposal atomically.

        There can be only one pending proposal per Safe nonce.
        Writing the same proposal again is fine, but a different one is refused,
        as the Safe can execute only one of them.

        :return:
            The written path

        :raise ProposalConflictError:
            The file already holds another Safe transaction
        """
        path = Path(path)
        with wait_other_writers(path):
            if path.exists():
                existing = read_proposal(path)
                if existing.safe_tx_hash != self.safe_tx_hash:
                    raise ProposalConflictError(
                        f"{path} already holds Safe tx {existing.safe_tx_hash} ({existing.description}) for Safe {self.safe_address} nonce {self.nonce}, "
                        f"refusing to replace it with {self.safe_tx_hash} ({self.description}). Execute or reject the pending proposal first."
                    )
            atomic_write_json(path, self.as_json_friendly_dict())
        logger.info("Wrote Safe tx proposal %s for Safe %s nonce %d to %s", self.safe_tx_hash, self.safe_address, self.nonce, path)
        return path


def read_proposal(path: Path) -> SafeTransactionProposal:
    """Read a proposal file back.

    Checks the stored Safe transaction hash against the stored fields,
    so a hand edited file is caught before anybody signs it.

    :raise ProposalFormatError:
        Unknown version, missing fields or the hash does not match
    """
    path = Path(path)
    data = read_json(path)
    if data.get("version") != PROPOSAL_VERSION:
        raise ProposalFormatError(f"{path}: unsupported proposal version {data.get('version')}")

    try:
        for name in _UINT_FIELDS:
            data[name] = int(data[name])
        proposal = SafeTransactionProposal(**data)
    except (KeyError, TypeError, ValueError) as e:
        raise ProposalFormatError(f"{path}: bad proposal file: {e}") from e

    expected = SafeTransactionProposal.create(proposal.get_request(), proposal.chain_id, proposal.safe_address)
    if expected.safe_tx_hash != proposal.safe_tx_hash:
        raise ProposalFormatError(f"{path}: stored Safe tx hash {proposal.safe_tx_hash} does not match the content, expected {expected.safe_tx_hash}")

    return proposal


def get_proposal_path(handoff_dir: Path, chain_id: int, safe_address: HexAddress | str, nonce: int) -> Path:
    """One proposal file per Safe nonce."""
    return handoff_dir / f"safe-tx-{chain_id}-{Web3.to_checksum_address(safe_address)}-{nonce}.json"
