"""An example script to upgrade a deployed proxy through the timelock.

Run twice: first to schedule the upgrade, then again after the timelock delay to execute it.
The scheduled operation is remembered in a state file next to the manifest.

To run:

.. code-block:: shell

    # Same ETH_* and SAFE_* variables as for deploy-deterministic.py, plus
    export TIMELOCK_ADDRESS=0x...
    export PROXY_NAME=move
    export NEW_IMPLEMENTATION=0x...
    python scripts/timelock-upgrade.py
"""

import logging
import os
import sys

from web3 import HTTPProvider, Web3

from eth_deploy.config import DeploymentConfig
from eth_deploy.deploy import DeploymentOrchestrator, StageStatus
from eth_deploy.hotwallet import HotWallet
from eth_deploy.ledger import Web3Ledger
from eth_deploy.light_client import LightClientEndpoint, wait_light_client_ready
from eth_deploy.signer import LocalKeySigner
from eth_deploy.timelock import OperationState, TimelockScheduler

logging.basicConfig(level=logging.INFO, stream=sys.stdout)


def main():
    config = DeploymentConfig.from_env()
    PROXY_NAME = os.environ["PROXY_NAME"]
    NEW_IMPLEMENTATION = os.environ["NEW_IMPLEMENTATION"]

    wait_light_client_ready(LightClientEndpoint.from_config(config))

    ledger = Web3Ledger(Web3(HTTPProvider(config.execution_rpc)))

    # The chain decides when the delay has passed
    scheduler = TimelockScheduler(
        config.timelock_min_delay,
        state_path=config.manifest_path.parent / "timelock-state.json",
        clock=ledger.get_latest_block_timestamp,
    )

    signers = []
    executor = None
    if config.mode == "direct":
        signers = [LocalKeySigner.from_private_key(k.strip()) for k in os.environ["OWNER_PRIVATE_KEYS"].split(",")]
        executor = HotWallet.from_private_key(os.environ["EXECUTOR_PRIVATE_KEY"])

    orchestrator = DeploymentOrchestrator.from_config(config, ledger, signers=signers, executor=executor, scheduler=scheduler)

    result = orchestrator.schedule_upgrade(PROXY_NAME, NEW_IMPLEMENTATION)
    print(f"Upgrade {result.name}: {result.status.value}, operation 0x{result.operation_id.hex()}")

    if result.status != StageStatus.skipped:
        return

    if scheduler.get_state(result.operation_id) != OperationState.scheduled:
        print(f"Operation is {scheduler.get_state(result.operation_id).value}, nothing to do")
        return

    wait = scheduler.seconds_until_ready(result.operation_id)
    if wait > 0:
        print(f"Timelock opens in {wait} seconds, run again later")
        return

    result = orchestrator.execute_upgrade(result.operation_id)
    print(f"Execute {result.name}: {result.status.value}")


if __name__ == "__main__":
    main()
