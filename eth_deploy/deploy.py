"""Deterministic deployments through a Safe multisig.

:py:class:`DeploymentOrchestrator` deploys contracts with a CREATE3 factory.
The factory is called by a Safe, so every deployment needs a quorum of Safe owners.

For each :py:class:`DeploymentTarget`:

1. If the manifest already has the contract, check it is on the chain where we expect it and skip

2. Predict the CREATE3 address

3. Check nothing unexpected lives at the address

4. Build a Safe transaction calling the factory ``deploy(bytes32 salt, bytes creationCode)``

5. Either sign it with local signers and execute it (``direct`` mode, for test and staging chains),
   or write a proposal file for the Safe owners (``proposal`` mode, for production)

6. Record the contract, and any contracts it created, in the manifest

Upgrades of the deployed proxies go through a timelock,
see :py:meth:`DeploymentOrchestrator.schedule_upgrade`.

Example:

.. code-block:: python

    config = DeploymentConfig.from_env()
    ledger = Web3Ledger(Web3(HTTPProvider(config.execution_rpc)))
    orchestrator = DeploymentOrchestrator.from_config(
        config,
        ledger,
        signers=[LocalKeySigner.from_private_key(k) for k in keys],
        executor=HotWallet.from_private_key(executor_key),
    )
    result = orchestrator.deploy(DeploymentTarget(name="move", init_code=init_code, salt=salt))
    print(f"{result.name}: {result.status.value} at {result.address}")
"""

import datetime
import enum
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Collection, NamedTuple

from eth_typing import HexAddress
from hexbytes import HexBytes
from web3 import Web3

from eth_deploy.abi import ZERO_BYTES32, encode_with_signature
from eth_deploy.config import DeploymentConfig
from eth_deploy.confirmation import ConfirmationPending
from eth_deploy.create3 import DeploymentAddress, check_address_collision, compute_create3_address
from eth_deploy.events import fetch_erc1967_admin, find_proxy_admin
from eth_deploy.hotwallet import HotWallet
from eth_deploy.ledger import Ledger, NetworkError
from eth_deploy.manifest import DeploymentManifest, ManifestConflictError, ManifestEntry
from eth_deploy.safe.execute import execute_safe_tx, fetch_safe_nonce, fetch_safe_owners, fetch_safe_threshold
from eth_deploy.safe.proposal import SafeTransactionProposal, get_proposal_path
from eth_deploy.safe.signatures import SignatureSet
from eth_deploy.safe.tx import SafeAuthorizationRequest, hash_safe_tx
from eth_deploy.signer import DigestSigner
from eth_deploy.timelock import (
    DONE_TIMESTAMP,
    NotReady,
    TimelockCall,
    TimelockScheduler,
    encode_execute_call,
    encode_schedule_call,
    fetch_operation_timestamp,
    hash_operation,
)


logger = logging.getLogger(__name__)


#: CREATE3 factory entry point
FACTORY_DEPLOY_SIGNATURE = "deploy(bytes32,bytes)"

#: OpenZeppelin v5 ProxyAdmin upgrade
UPGRADE_AND_CALL_SIGNATURE = "upgradeAndCall(address,address,bytes)"

TIMELOCK_SCHEDULE_SIGNATURE = "schedule(address,uint256,bytes,bytes32,bytes32,uint256)"

TIMELOCK_EXECUTE_SIGNATURE = "execute(address,uint256,bytes,bytes32,bytes32)"


class ContractDeploymentFailed(Exception):
    """Deployment transaction went through, but there is no contract."""

    def __init__(self, tx_hash, msg):
        super().__init__(msg)
        self.tx_hash = tx_hash


class UnknownContract(Exception):
    """Manifest does not have a contract we need."""


class ExecutionMode(enum.Enum):
    """How Safe transactions are submitted."""

    #: Sign with local signers and execute right away
    direct = "direct"

    #: Write a proposal file for an offline signing ceremony
    proposal = "proposal"


class StageStatus(enum.Enum):
    """Outcome of a deployment stage."""

    #: Contract deployed, or an operation executed, and recorded
    completed = "completed"

    #: Already done in an earlier run, nothing was written
    skipped = "skipped"

    #: Proposal file written, waiting for the Safe owners
    proposed = "proposed"

    #: Broadcasted, but not confirmed in time. Re-run to resume.
    pending = "pending"

    #: Timelock operation scheduled, waiting for the delay
    scheduled = "scheduled"


@dataclass(frozen=True, slots=True)
class DeploymentTarget:
    """A contract we want at a deterministic address."""

    #: Manifest name
    name: str

    #: Creation code with constructor arguments appended
    init_code: bytes

    #: 32 bytes CREATE3 salt
    salt: bytes

    #: keccak256 of the runtime code, if known.
    #:
    #: Used to verify what we find at the address.
    expected_code_hash: bytes | None = None

    #: Native currency sent to the constructor
    value: int = 0

    def __post_init__(self):
        assert self.name, "Target needs a name"
        object.__setattr__(self, "init_code", bytes(HexBytes(self.init_code)))
        object.__setattr__(self, "salt", bytes(HexBytes(self.salt)))
        assert len(self.init_code) > 0, f"{self.name}: empty init code"
        assert len(self.salt) == 32, f"{self.name}: salt must be 32 bytes, got {len(self.salt)}"
        if self.expected_code_hash is not None:
            object.__setattr__(self, "expected_code_hash", bytes(HexBytes(self.expected_code_hash)))

    def __repr__(self):
        return f"<DeploymentTarget {self.name} salt:0x{self.salt.hex()} init code:{len(self.init_code)} bytes>"

    @property
    def init_code_hash(self) -> bytes:
        return bytes(Web3.keccak(self.init_code))


@dataclass(slots=True)
class StageResult:
    """What happened to a deployment target or an upgrade."""

    name: str

    status: StageStatus

    #: Deployed or predicted address
    address: HexAddress | None = None

    #: Broadcasted transaction, direct mode only
    tx_hash: HexBytes | None = None

    #: Proposal file, proposal mode only
    handoff_path: Path | None = None

    #: Other contracts created by the deployment, manifest name -> address
    secondary: dict[str, HexAddress] = field(default_factory=dict)

    #: Timelock operation id for upgrades
    operation_id: HexBytes | None = None


class TargetCheck(NamedTuple):
    """Read-only status of a deployment target."""

    name: str

    #: Predicted CREATE3 address
    address: HexAddress

    #: What the manifest says
    entry: ManifestEntry | None

    #: Is there code at the predicted address
    has_code: bool

    def is_deployed(self) -> bool:
        return self.entry is not None and self.entry.address == self.address and self.has_code


class DeploymentOrchestrator:
    """Drive deterministic deployments and timelocked upgrades.

    - Stages run one after another. Later stages may need addresses from earlier ones.

    - All transactions are broadcast by one ``executor`` hot wallet, so nonces never collide.

    - Re-running with the same targets is safe: finished stages are skipped
      without any transactions.
    """

    def __init__(
        self,
        ledger: Ledger,
        manifest: DeploymentManifest,
        safe_address: HexAddress | str,
        factory: HexAddress | str,
        signers: Collection[DigestSigner] = (),
        executor: HotWallet | None = None,
        mode: ExecutionMode = ExecutionMode.proposal,
        scheduler: TimelockScheduler | None = None,
        timelock_address: HexAddress | str | None = None,
        handoff_dir: Path | str | None = None,
        threshold: int | None = None,
        namespace_salt: bool = False,
        max_polls: int = 60,
        poll_delay=datetime.timedelta(seconds=2),
    ):
        """
        :param signers:
            Safe owners signing locally in ``direct`` mode

        :param executor:
            Pays the gas of ``direct`` mode transactions

        :param scheduler:
            Needed for upgrades

        :param handoff_dir:
            Where ``proposal`` mode writes its files. Defaults to the manifest folder.

        :param threshold:
            Signing policy threshold. The Safe threshold read from the chain is
            used if it is higher.

        :param namespace_salt:
            Set if the factory hashes the caller address into the salt,
            like ``CREATE3Factory`` by ZeframLou does

        :param max_polls:
            How long we wait for a confirmation before reporting the stage pending
        """
        assert isinstance(ledger, Ledger), f"Got {type(ledger)}"
        assert isinstance(manifest, DeploymentManifest), f"Got {type(manifest)}"
        mode = ExecutionMode(mode)
        if mode == ExecutionMode.direct:
            assert executor is not None, "direct mode needs an executor hot wallet"
            assert len(signers) > 0, "direct mode needs signers"

        self.ledger = ledger
        self.manifest = manifest
        self.safe_address = Web3.to_checksum_address(safe_address)
        self.factory = Web3.to_checksum_address(factory)
        self.signers = list(signers)
        self.executor = executor
        self.mode = mode
        self.scheduler = scheduler
        self.timelock_address = Web3.to_checksum_address(timelock_address) if timelock_address else None
        self.handoff_dir = Path(handoff_dir) if handoff_dir else manifest.path.parent
        self.threshold = threshold
        self.namespace_salt = namespace_salt
        self.max_polls = max_polls
        self.poll_delay = poll_delay
        self._chain_id: int | None = None

    def __repr__(self):
        return f"<DeploymentOrchestrator mode:{self.mode.value} Safe:{self.safe_address} factory:{self.factory}>"

    @staticmethod
    def from_config(
        config: DeploymentConfig,
        ledger: Ledger,
        signers: Collection[DigestSigner] = (),
        executor: HotWallet | None = None,
        scheduler: TimelockScheduler | None = None,
        **kwargs,
    ) -> "DeploymentOrchestrator":
        """Create an orchestrator from environment configuration.

        :raise eth_deploy.config.ConfigError:
            ``SAFE_ADDRESS`` or ``DEPLOYMENT_FACTORY`` is missing
        """
        return DeploymentOrchestrator(
            ledger=ledger,
            manifest=DeploymentManifest(config.manifest_path),
            safe_address=config.require_address("safe_address"),
            factory=config.require_address("factory"),
            signers=signers,
            executor=executor,
            mode=ExecutionMode(config.mode),
            scheduler=scheduler,
            timelock_address=config.timelock_address,
            threshold=config.safe_threshold,
            max_polls=config.confirmation_max_polls,
            **kwargs,
        )

    @property
    def chain_id(self) -> int:
        if self._chain_id is None:
            self._chain_id = self.ledger.get_chain_id()
        return self._chain_id

    def predict_address(self, target: DeploymentTarget) -> DeploymentAddress:
        """Where the target will be deployed."""
        return compute_create3_address(
            self.factory,
            target.salt,
            target.init_code_hash,
            sender=self.safe_address if self.namespace_salt else None,
        )

    def check_targets(self, targets: Collection[DeploymentTarget], max_workers: int = 4) -> list[TargetCheck]:
        """Check the deployment status of many targets in parallel.

        Only reads. Safe to call at any time.
        """
        chain_id = self.chain_id
        entries = self.manifest.load(chain_id)

        def _check(target: DeploymentTarget) -> TargetCheck:
            predicted = self.predict_address(target)
            return TargetCheck(
                name=target.name,
                address=predicted.address,
                entry=entries.get(target.name),
                has_code=len(self.ledger.get_code(predicted.address)) > 0,
            )

        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            return list(executor.map(_check, targets))

    def _verify_existing(self, entry: ManifestEntry, predicted: DeploymentAddress, target: DeploymentTarget):
        if entry.address != predicted.address:
            raise ManifestConflictError(f"Manifest has {target.name} at {entry.address} on chain {self.chain_id}, but salt 0x{target.salt.hex()} gives {predicted.address}")

        code = self.ledger.get_code(entry.address)
        if not code:
            raise ManifestConflictError(f"Manifest has {target.name} at {entry.address} on chain {self.chain_id}, but there is no code at the address")

        if target.expected_code_hash is not None:
            check_address_collision(self.ledger, entry.address, target.expected_code_hash)

    def _submit(self, request: SafeAuthorizationRequest, expected_signature: str, description: str) -> tuple[StageStatus, dict | None, HexBytes | None, Path | None]:
        """Submit a Safe transaction in the current mode.

        :return:
            Tuple (status, receipt, tx hash, proposal path)
        """
        if self.mode == ExecutionMode.proposal:
            proposal = SafeTransactionProposal.create(request, self.chain_id, self.safe_address, description=description)
            path = proposal.write(get_proposal_path(self.handoff_dir, self.chain_id, self.safe_address, request.nonce))
            return StageStatus.proposed, None, None, path

        digest = hash_safe_tx(request, self.chain_id, self.safe_address, expected_signature)
        signatures = SignatureSet(digest)
        signatures.collect(self.signers)

        threshold = fetch_safe_threshold(self.ledger, self.safe_address)
        if self.threshold is not None and self.threshold != threshold:
            logger.warning("Configured signing threshold %d differs from Safe %s threshold %d", self.threshold, self.safe_address, threshold)
            threshold = max(threshold, self.threshold)

        signatures.verify_against_chain(fetch_safe_owners(self.ledger, self.safe_address), threshold)

        self.executor.sync_nonce(self.ledger)
        try:
            receipt = execute_safe_tx(
                self.ledger,
                self.executor,
                self.safe_address,
                request,
                signatures,
                max_polls=self.max_polls,
                poll_delay=self.poll_delay,
            )
        except ConfirmationPending as e:
            logger.warning("%s: %s", description, e)
            return StageStatus.pending, None, e.tx_hash, None

        return StageStatus.completed, receipt, HexBytes(receipt["transactionHash"]), None

    def _find_secondary(self, target: DeploymentTarget, address: HexAddress, receipt: dict | None = None) -> dict[str, HexAddress]:
        """Contracts the target created in its constructor.

        From the deployment receipt when we have it, otherwise from the proxy storage.
        """
        admin = find_proxy_admin(receipt, address) if receipt else None
        if admin is None:
            admin = fetch_erc1967_admin(self.ledger, address)
        if admin is None:
            return {}
        return {f"{target.name}_admin": admin}

    def _record(self, result: StageResult, **metadata):
        # Secondaries first, a recorded main entry makes the next run skip the stage
        for name, address in result.secondary.items():
            self.manifest.save(self.chain_id, name, address, **metadata)
        self.manifest.save(self.chain_id, result.name, result.address, **metadata)

    def deploy(self, target: DeploymentTarget) -> StageResult:
        """Deploy a contract, unless already deployed.

        A node failure after the Safe transaction was broadcast, or before we
        know anything, gives a ``pending`` stage. Re-run to resume.

        :raise eth_deploy.manifest.ManifestConflictError:
            The manifest disagrees with the chain or with the predicted address

        :raise eth_deploy.create3.AddressCollisionError:
            Something else lives at the predicted address

        :raise eth_deploy.safe.signatures.SignatureError:
            Not enough valid signatures

        :raise eth_deploy.safe.proposal.ProposalConflictError:
            Another proposal waits for the same Safe nonce

        :raise ContractDeploymentFailed:
            The Safe transaction went through, but no contract appeared
        """
        assert isinstance(target, DeploymentTarget), f"Got {type(target)}"
        try:
            return self._deploy(target)
        except NetworkError as e:
            logger.warning("Deploying %s: node failed, %s. Re-run to resume.", target.name, e)
            return StageResult(name=target.name, status=StageStatus.pending, address=self.predict_address(target).address)

    def _deploy(self, target: DeploymentTarget) -> StageResult:
        chain_id = self.chain_id
        predicted = self.predict_address(target)

        existing = self.manifest.get(chain_id, target.name)
        if existing is not None:
            self._verify_existing(existing, predicted, target)
            logger.info("%s already deployed at %s on chain %d, skipping", target.name, existing.address, chain_id)
            return StageResult(name=target.name, status=StageStatus.skipped, address=existing.address)

        logger.info("Deploying %s to %s, chain %d, mode %s", target.name, predicted.address, chain_id, self.mode.value)

        if self.namespace_salt and target.expected_code_hash is None:
            # Guarded salt, only our Safe can deploy to this address
            already_deployed = len(self.ledger.get_code(predicted.address)) > 0
        else:
            already_deployed = check_address_collision(self.ledger, predicted.address, target.expected_code_hash)

        if already_deployed:
            # A previous run, or a signing ceremony, deployed it but nobody recorded it
            result = StageResult(name=target.name, status=StageStatus.completed, address=predicted.address)
            result.secondary = self._find_secondary(target, predicted.address)
            self._record(result, deployer=self.safe_address)
            logger.info("Recorded earlier deployment of %s at %s, secondary contracts %s", target.name, predicted.address, result.secondary)
            return result

        request = SafeAuthorizationRequest(
            to=self.factory,
            value=target.value,
            data=encode_with_signature(FACTORY_DEPLOY_SIGNATURE, [target.salt, target.init_code]),
            nonce=fetch_safe_nonce(self.ledger, self.safe_address),
        )

        status, receipt, tx_hash, path = self._submit(request, FACTORY_DEPLOY_SIGNATURE, f"Deploy {target.name} to {predicted.address}")
        result = StageResult(name=target.name, status=status, address=predicted.address, tx_hash=tx_hash, handoff_path=path)
        if status != StageStatus.completed:
            return result

        if not self.ledger.get_code(predicted.address):
            raise ContractDeploymentFailed(tx_hash, f"Safe tx 0x{tx_hash.hex()} went through, but there is no {target.name} contract at {predicted.address}")

        if target.expected_code_hash is not None:
            check_address_collision(self.ledger, predicted.address, target.expected_code_hash)

        result.secondary = self._find_secondary(target, predicted.address, receipt)
        self._record(result, tx_hash="0x" + tx_hash.hex(), block_number=receipt.get("blockNumber"), deployer=self.safe_address)

        logger.info("Deployed %s at %s, secondary contracts %s", target.name, predicted.address, result.secondary)
        return result

    def deploy_all(self, targets: Collection[DeploymentTarget]) -> list[StageResult]:
        """Deploy targets in order.

        Stops at the first stage that does not complete, as later stages may depend on it.
        """
        results = []
        for target in targets:
            result = self.deploy(target)
            results.append(result)
            if result.status not in (StageStatus.completed, StageStatus.skipped):
                logger.info("Stopping at %s, status %s", target.name, result.status.value)
                break
        return results

    def _get_recorded(self, name: str) -> ManifestEntry:
        entry = self.manifest.get(self.chain_id, name)
        if entry is None:
            raise UnknownContract(f"Manifest {self.manifest.path} has no {name} on chain {self.chain_id}")
        return entry

    def _require_timelock(self) -> tuple[TimelockScheduler, HexAddress]:
        assert self.scheduler is not None, "Upgrades need a timelock scheduler"
        assert self.timelock_address is not None, "Upgrades need a timelock address"
        return self.scheduler, self.timelock_address

    def schedule_upgrade(
        self,
        proxy_name: str,
        implementation: HexAddress | str,
        salt: bytes | str = ZERO_BYTES32,
        predecessor: bytes | str = ZERO_BYTES32,
        delay: int | None = None,
        call_data: bytes = b"",
    ) -> StageResult:
        """Schedule a proxy upgrade on the timelock.

        The Safe calls ``TimelockController.schedule()`` with a ``ProxyAdmin.upgradeAndCall()`` call.
        The proxy admin is the ``<proxy_name>_admin`` manifest entry, which
        must be owned by the timelock.

        :param call_data:
            Call to make on the proxy right after the upgrade, empty for none

        :raise eth_deploy.timelock.DelayTooShort:
            ``delay`` is below the minimum delay

        :raise UnknownContract:
            Proxy or its admin is not in the manifest
        """
        scheduler, timelock = self._require_timelock()
        proxy = self._get_recorded(proxy_name)
        admin = self._get_recorded(f"{proxy_name}_admin")
        implementation = Web3.to_checksum_address(implementation)

        call = TimelockCall(
            target=admin.address,
            data=encode_with_signature(UPGRADE_AND_CALL_SIGNATURE, [proxy.address, implementation, bytes(call_data)]),
        )
        name = f"{proxy_name}_upgrade"

        existing_id = self._find_scheduled(call, predecessor, salt)
        if existing_id is not None:
            logger.info("Upgrade of %s to %s already scheduled as %s", proxy_name, implementation, existing_id.hex())
            return StageResult(name=name, status=StageStatus.skipped, address=proxy.address, operation_id=existing_id)

        operation_id, delay = scheduler.validate_schedule(call, predecessor, salt, delay)

        try:
            if fetch_operation_timestamp(self.ledger, timelock, operation_id) != 0:
                # Scheduled on chain by an earlier run that lost its local state
                scheduler.schedule(call, predecessor, salt, delay)
                return StageResult(name=name, status=StageStatus.skipped, address=proxy.address, operation_id=operation_id)

            request = SafeAuthorizationRequest(
                to=timelock,
                data=encode_schedule_call(call, bytes(HexBytes(predecessor)), bytes(HexBytes(salt)), delay),
                nonce=fetch_safe_nonce(self.ledger, self.safe_address),
            )
            status, _receipt, tx_hash, path = self._submit(request, TIMELOCK_SCHEDULE_SIGNATURE, f"Schedule upgrade of {proxy_name} to {implementation}")
        except NetworkError as e:
            logger.warning("Scheduling upgrade of %s: node failed, %s. Re-run to resume.", proxy_name, e)
            return StageResult(name=name, status=StageStatus.pending, address=proxy.address, operation_id=operation_id)

        scheduler.schedule(call, predecessor, salt, delay)

        if status == StageStatus.completed:
            status = StageStatus.scheduled

        logger.info("Upgrade of %s to %s: %s, operation %s", proxy_name, implementation, status.value, operation_id.hex())
        return StageResult(name=name, status=status, address=proxy.address, tx_hash=tx_hash, handoff_path=path, operation_id=operation_id)

    def _find_scheduled(self, call: TimelockCall, predecessor: bytes | str, salt: bytes | str) -> HexBytes | None:
        scheduler, _ = self._require_timelock()
        operation_id = hash_operation(call.target, call.value, call.data, bytes(HexBytes(predecessor)), bytes(HexBytes(salt)))
        if scheduler.get_operation(operation_id) is not None:
            return operation_id
        return None

    def execute_upgrade(self, operation_id: bytes | str) -> StageResult:
        """Execute a scheduled upgrade once its delay has passed.

        The timelock contract is the authority. Our local schedule is checked first,
        then ``getTimestamp()`` must say the operation is on the chain and ready
        at the latest block.

        :raise eth_deploy.timelock.NotReady:
            The delay has not passed, or the Safe transaction calling ``schedule()``
            has not been executed yet. Nothing is sent.

        :raise eth_deploy.timelock.AlreadyFinalised:
            Already executed or cancelled
        """
        scheduler, timelock = self._require_timelock()
        operation_id = HexBytes(operation_id)
        name = f"operation_{operation_id.hex()}"

        try:
            onchain_timestamp = fetch_operation_timestamp(self.ledger, timelock, operation_id)
            if onchain_timestamp == DONE_TIMESTAMP:
                op = scheduler.mark_executed_onchain(operation_id)
                return StageResult(name=name, status=StageStatus.skipped, address=op.target, operation_id=operation_id)

            op = scheduler.check_executable(operation_id)

            if onchain_timestamp == 0:
                raise NotReady(f"Operation {op.operation_id} is unknown to timelock {timelock}, the Safe transaction calling schedule() has not been executed")

            block_timestamp = self.ledger.get_latest_block_timestamp()
            if block_timestamp < onchain_timestamp:
                raise NotReady(f"Operation {op.operation_id} is ready at {onchain_timestamp} on timelock {timelock}, latest block is at {block_timestamp}")

            request = SafeAuthorizationRequest(
                to=timelock,
                data=encode_execute_call(op.get_call(), bytes(HexBytes(op.predecessor)), bytes(HexBytes(op.salt))),
                nonce=fetch_safe_nonce(self.ledger, self.safe_address),
            )
            status, _receipt, tx_hash, path = self._submit(request, TIMELOCK_EXECUTE_SIGNATURE, f"Execute timelock operation {operation_id.hex()}")
        except NetworkError as e:
            logger.warning("Executing timelock operation %s: node failed, %s. Re-run to resume.", operation_id.hex(), e)
            return StageResult(name=name, status=StageStatus.pending, operation_id=operation_id)

        if status == StageStatus.completed:
            scheduler.execute(operation_id)

        return StageResult(name=name, status=status, address=op.target, tx_hash=tx_hash, handoff_path=path, operation_id=operation_id)
