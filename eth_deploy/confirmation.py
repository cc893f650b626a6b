"""Transaction broadcasting and confirmation.

- Broadcast a signed transaction and poll for its receipt

- The wait is bounded. If the transaction is not mined in time it is not a failure:
  we raise :py:class:`ConfirmationPending` with the transaction hash, and a re-run can
  pick the deployment up from the chain state
"""

import datetime
import logging
import time

from hexbytes import HexBytes

from eth_deploy.hotwallet import SignedTransactionWithNonce
from eth_deploy.ledger import Ledger, NetworkError


logger = logging.getLogger(__name__)


class ConfirmationPending(Exception):
    """We ran out of polls before the transaction was mined."""

    def __init__(self, tx_hash: HexBytes, msg: str):
        super().__init__(msg)
        self.tx_hash = tx_hash


class TransactionReverted(Exception):
    """Transaction was mined, but reverted."""

    def __init__(self, tx_hash: HexBytes, receipt: dict, msg: str):
        super().__init__(msg)
        self.tx_hash = tx_hash
        self.receipt = receipt


def wait_for_confirmation(
    ledger: Ledger,
    tx_hash: HexBytes,
    max_polls: int = 60,
    poll_delay=datetime.timedelta(seconds=2),
) -> dict:
    """Poll until a transaction receipt is available.

    :param max_polls:
        How many times we ask for the receipt before giving up

    :param poll_delay:
        Sleep between polls

    :return:
        Transaction receipt

    :raise ConfirmationPending:
        Transaction was not mined within ``max_polls``,
        or the node stopped answering while we polled

    :raise TransactionReverted:
        Transaction was mined but failed
    """
    assert isinstance(poll_delay, datetime.timedelta)
    assert max_polls >= 1

    tx_hash = HexBytes(tx_hash)

    try:
        for attempt in range(1, max_polls + 1):
            try:
                receipt = ledger.get_transaction_receipt(tx_hash)
            except NetworkError as e:
                # Already broadcasted, the chain state decides on the next run
                raise ConfirmationPending(tx_hash, f"Transaction 0x{tx_hash.hex()} broadcasted, but could not poll its receipt: {e}, re-run to resume") from e
            if receipt is not None:
                if receipt["status"] != 1:
                    raise TransactionReverted(tx_hash, receipt, f"Transaction 0x{tx_hash.hex()} reverted in block {receipt.get('blockNumber')}")
                logger.info("Transaction 0x%s confirmed in block %s after %d polls", tx_hash.hex(), receipt.get("blockNumber"), attempt)
                return receipt

            if attempt < max_polls:
                time.sleep(poll_delay.total_seconds())
    except KeyboardInterrupt:
        # Broadcast cannot be undone, make sure the operator knows about it
        logger.error("Interrupted while waiting for transaction 0x%s, it may still be mined", tx_hash.hex())
        raise

    raise ConfirmationPending(tx_hash, f"Transaction 0x{tx_hash.hex()} not mined after {max_polls} polls, re-run to resume")


def broadcast_and_wait(
    ledger: Ledger,
    signed_tx: SignedTransactionWithNonce,
    max_polls: int = 60,
    poll_delay=datetime.timedelta(seconds=2),
) -> dict:
    """Broadcast a signed transaction and wait for its receipt.

    See :py:func:`wait_for_confirmation`.
    """
    assert isinstance(signed_tx, SignedTransactionWithNonce), f"Got {type(signed_tx)}"
    try:
        tx_hash = ledger.send_raw_transaction(signed_tx.raw_transaction)
    except NetworkError as e:
        # The node may have accepted the transaction before the connection broke
        raise ConfirmationPending(signed_tx.hash, f"Could not confirm broadcast of 0x{signed_tx.hash.hex()}: {e}, re-run to resume") from e
    logger.info("Broadcasted 0x%s from %s, nonce %d", HexBytes(tx_hash).hex(), signed_tx.address, signed_tx.nonce)
    return wait_for_confirmation(ledger, tx_hash, max_polls=max_polls, poll_delay=poll_delay)
