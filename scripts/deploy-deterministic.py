"""An example script to deploy a contract at a deterministic address through a Safe.

- Waits the light client to sync before touching the chain
- Deploys the contract with the CREATE3 factory, called by the Safe
- In ``proposal`` mode writes a Safe transaction file for the owners, next to the manifest
- In ``direct`` mode signs with the given owner keys and executes right away

Re-running the script is safe. Already deployed contracts are skipped.

To run:

.. code-block:: shell

    export ETH_NETWORK=sepolia
    export ETH_EXECUTION_RPC=http://localhost:8545
    export ETH_CONSENSUS_RPC=...
    export ETH_CHECKPOINT=0x...
    export TIMELOCK_MIN_DELAY=86400
    export SAFE_THRESHOLD=2
    export SAFE_ADDRESS=0x...
    export DEPLOYMENT_FACTORY=0x...
    export INIT_CODE_FILE=build/move.bin
    export SALT=0x...
    # direct mode only
    export DEPLOY_MODE=direct
    export OWNER_PRIVATE_KEYS=0x...,0x...
    export EXECUTOR_PRIVATE_KEY=0x...
    python scripts/deploy-deterministic.py
"""

import logging
import os
import sys
from pathlib import Path

from hexbytes import HexBytes
from web3 import HTTPProvider, Web3

from eth_deploy.config import DeploymentConfig
from eth_deploy.deploy import DeploymentOrchestrator, DeploymentTarget
from eth_deploy.hotwallet import HotWallet
from eth_deploy.ledger import Web3Ledger
from eth_deploy.light_client import LightClientEndpoint, wait_light_client_ready
from eth_deploy.signer import LocalKeySigner

logging.basicConfig(level=logging.INFO, stream=sys.stdout)


def main():
    config = DeploymentConfig.from_env()
    CONTRACT_NAME = os.environ.get("CONTRACT_NAME", "move")
    INIT_CODE_FILE = os.environ["INIT_CODE_FILE"]
    SALT = os.environ["SALT"]
    EXPECTED_CODE_HASH = os.environ.get("EXPECTED_CODE_HASH")

    wait_light_client_ready(LightClientEndpoint.from_config(config))

    web3 = Web3(HTTPProvider(config.execution_rpc))
    ledger = Web3Ledger(web3)

    signers = []
    executor = None
    if config.mode == "direct":
        signers = [LocalKeySigner.from_private_key(k.strip()) for k in os.environ["OWNER_PRIVATE_KEYS"].split(",")]
        executor = HotWallet.from_private_key(os.environ["EXECUTOR_PRIVATE_KEY"])

    orchestrator = DeploymentOrchestrator.from_config(config, ledger, signers=signers, executor=executor)

    target = DeploymentTarget(
        name=CONTRACT_NAME,
        init_code=HexBytes(Path(INIT_CODE_FILE).read_text().strip()),
        salt=HexBytes(SALT),
        expected_code_hash=HexBytes(EXPECTED_CODE_HASH) if EXPECTED_CODE_HASH else None,
    )

    predicted = orchestrator.predict_address(target)
    print(f"{target.name} goes to {predicted.address} on {config.network}")

    result = orchestrator.deploy(target)
    print(f"{result.name}: {result.status.value} at {result.address}")
    if result.handoff_path:
        print(f"Safe transaction written to {result.handoff_path}, ask the Safe owners to sign it")
    if result.tx_hash:
        print(f"Transaction 0x{result.tx_hash.hex()}")
    for name, address in result.secondary.items():
        print(f"{name}: {address}")


if __name__ == "__main__":
    main()
