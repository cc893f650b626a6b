"""Hot wallet for broadcasting transactions.

- The executor account pays the gas of ``Safe.execTransaction()`` calls.
  It does not need to be a Safe owner.

- Nonces are managed manually, so a deployment run never races itself

"""

import logging
from typing import NamedTuple

from eth_account import Account
from eth_account.signers.local import LocalAccount
from eth_typing import HexAddress
from hexbytes import HexBytes

from eth_deploy.ledger import Ledger

logger = logging.getLogger(__name__)


class SignedTransactionWithNonce(NamedTuple):
    """A signed transaction with the information where it came from.

    Retain the source, so we can diagnose broadcasting failures.
    """

    #: Bytes to broadcast
    raw_transaction: HexBytes

    #: Transaction hash
    hash: HexBytes

    #: What was the source nonce for this transaction
    nonce: int

    #: What was the source address for this transaction
    address: str

    #: Unencoded transaction data as a dict.
    source: dict | None = None

    def __repr__(self):
        return f"<SignedTransactionWithNonce hash:{self.hash.hex()} nonce:{self.nonce} from:{self.address}>"


class HotWallet:
    """Hot wallet for signing transactions.

    - Maintains a plain text private key of an Ethereum address in the process memory
      using :py:class:`eth_account.signers.local.LocalAccount` and a nonce counter.

    - Call :py:meth:`sync_nonce` before signing.

    .. note ::

        This class is not thread safe. Transactions of one account must be
        signed and broadcast from a single thread, or nonces collide.
    """

    def __init__(self, account: LocalAccount):
        """Create a hot wallet from a local account."""
        self.account = account
        self.current_nonce: int | None = None

    def __repr__(self):
        return f"<Hot wallet {self.account.address}>"

    @property
    def address(self) -> HexAddress:
        """Ethereum address of the wallet."""
        return self.account.address

    def sync_nonce(self, ledger: Ledger):
        """Initialise the current nonce from the on-chain data."""
        new_nonce = ledger.get_transaction_count(self.account.address)
        if self.current_nonce is not None and new_nonce < self.current_nonce:
            # The node has not seen our latest broadcast yet
            logger.warning("Nonce sync failed, read onchain nonce %d that is older than our current nonce: %d", new_nonce, self.current_nonce)
            return
        self.current_nonce = new_nonce
        logger.info("Synced nonce for %s to %d", self.account.address, self.current_nonce)

    def allocate_nonce(self) -> int:
        """Get the next free available nonce to be used with a transaction.

        Increase the nonce counter.
        """
        assert self.current_nonce is not None, f"Nonce is not yet synced from the blockchain: {self}"
        nonce = self.current_nonce
        self.current_nonce += 1
        return nonce

    def sign_transaction_with_new_nonce(self, tx: dict) -> SignedTransactionWithNonce:
        """Signs a transaction and allocates a nonce for it.

        :param tx:
            Ethereum transaction data as a dict.
            This is modified in-place to include nonce.

        :return:
            A transaction payload and nonce with used to generate this transaction.
        """
        assert type(tx) == dict
        assert "nonce" not in tx
        tx["nonce"] = self.allocate_nonce()
        _signed = self.account.sign_transaction(tx)
        return SignedTransactionWithNonce(
            raw_transaction=HexBytes(_signed.raw_transaction),
            hash=HexBytes(_signed.hash),
            nonce=tx["nonce"],
            address=self.address,
            source=tx,
        )

    @staticmethod
    def from_private_key(key: str) -> "HotWallet":
        """Create a hot wallet from a private key that is passed in as a hex string.

        :param key:
            0x prefixed hex string
        """
        assert key.startswith("0x"), "Private key must be 0x prefixed"
        return HotWallet(Account.from_key(key))
