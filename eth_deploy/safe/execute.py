"""Read Safe state and execute fully signed Safe transactions.

We talk to the Safe contract with raw ``eth_call`` and hand encoded payloads,
so any Safe v1.3.0+ deployment works without ABI files.
"""

import datetime
import logging

import eth_abi
from eth_typing import HexAddress
from web3 import Web3

from eth_deploy.abi import encode_with_signature
from eth_deploy.confirmation import broadcast_and_wait
from eth_deploy.events import assert_safe_execution_success
from eth_deploy.gas import apply_gas
from eth_deploy.hotwallet import HotWallet
from eth_deploy.ledger import Ledger
from eth_deploy.safe.signatures import SignatureSet
from eth_deploy.safe.tx import SafeAuthorizationRequest


logger = logging.getLogger(__name__)


EXEC_TRANSACTION_SIGNATURE = "execTransaction(address,uint256,bytes,uint8,uint256,uint256,uint256,address,address,bytes)"

#: Gas on top of the estimate, Safe signature checks make estimates tight
GAS_MARGIN = 75_000


def fetch_safe_owners(ledger: Ledger, safe_address: HexAddress | str) -> list[HexAddress]:
    """Current Safe owners, ``Safe.getOwners()``."""
    data = ledger.call(safe_address, encode_with_signature("getOwners()", []))
    (owners,) = eth_abi.decode(["address[]"], data)
    return [Web3.to_checksum_address(a) for a in owners]


def fetch_safe_threshold(ledger: Ledger, safe_address: HexAddress | str) -> int:
    """Current signing threshold, ``Safe.getThreshold()``."""
    data = ledger.call(safe_address, encode_with_signature("getThreshold()", []))
    (threshold,) = eth_abi.decode(["uint256"], data)
    return threshold


def fetch_safe_nonce(ledger: Ledger, safe_address: HexAddress | str) -> int:
    """Nonce the next Safe transaction must use, ``Safe.nonce()``."""
    data = ledger.call(safe_address, encode_with_signature("nonce()", []))
    (nonce,) = eth_abi.decode(["uint256"], data)
    return nonce


def encode_exec_transaction(request: SafeAuthorizationRequest, signatures: SignatureSet) -> bytes:
    """``Safe.execTransaction()`` payload."""
    return encode_with_signature(
        EXEC_TRANSACTION_SIGNATURE,
        [
            request.to,
            request.value,
            request.data,
            int(request.operation),
            request.safe_tx_gas,
            request.base_gas,
            request.gas_price,
            request.gas_token,
            request.refund_receiver,
            signatures.to_bytes(),
        ],
    )


def execute_safe_tx(
    ledger: Ledger,
    executor: HotWallet,
    safe_address: HexAddress | str,
    request: SafeAuthorizationRequest,
    signatures: SignatureSet,
    gas: int | None = None,
    max_polls: int = 60,
    poll_delay=datetime.timedelta(seconds=2),
) -> dict:
    """Execute a signed Safe transaction.

    - The executor pays the gas, it does not need to be an owner

    - Signatures must already be verified against the current owners,
      see :py:meth:`SignatureSet.verify_against_chain`

    :param gas:
        Gas limit. If not given, estimate and add a margin.

    :return:
        Transaction receipt

    :raise eth_deploy.confirmation.ConfirmationPending:
        Broadcasted but not yet mined

    :raise eth_deploy.events.SafeExecutionFailed:
        Mined, but the Safe reports the inner call failed
    """
    safe_address = Web3.to_checksum_address(safe_address)
    tx = {
        "from": executor.address,
        "to": safe_address,
        "value": 0,
        "data": encode_exec_transaction(request, signatures),
        "chainId": ledger.get_chain_id(),
    }

    if gas is None:
        gas = ledger.estimate_gas(dict(tx)) + GAS_MARGIN
    tx["gas"] = gas
    apply_gas(tx, ledger.estimate_gas_price())

    signed = executor.sign_transaction_with_new_nonce(tx)
    logger.info("Executing Safe tx 0x%s on Safe %s with signers %s", signatures.digest.hex(), safe_address, signatures.signers)
    receipt = broadcast_and_wait(ledger, signed, max_polls=max_polls, poll_delay=poll_delay)
    assert_safe_execution_success(receipt, safe_address, signatures.digest)
    return receipt
