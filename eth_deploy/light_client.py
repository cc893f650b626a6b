"""Light client readiness checks.

Deployments can be routed through a local light client (e.g. Helios)
that verifies the execution RPC answers against the consensus layer.
The light client needs to sync from its checkpoint before it serves requests,
so we wait until it reports it is no longer syncing.
"""

import datetime
import logging
import time
from dataclasses import dataclass

import requests

from eth_deploy.config import DeploymentConfig


logger = logging.getLogger(__name__)


class LightClientNotReady(Exception):
    """Light client did not become ready in time."""


@dataclass(frozen=True, slots=True)
class LightClientEndpoint:
    """RPC URL pair of a light client."""

    #: Where we send JSON-RPC requests
    execution_rpc: str

    #: Beacon API the light client follows
    consensus_rpc: str

    def __repr__(self):
        # URLs may contain API keys
        return "<LightClientEndpoint>"

    @staticmethod
    def from_config(config: DeploymentConfig) -> "LightClientEndpoint":
        return LightClientEndpoint(execution_rpc=config.execution_rpc, consensus_rpc=config.consensus_rpc)


def is_light_client_ready(
    endpoint: LightClientEndpoint,
    session: requests.Session | None = None,
    timeout: float = 10.0,
) -> bool:
    """Check if the light client serves requests.

    Ready means ``eth_syncing`` answers ``false``.
    Connection failures and JSON-RPC errors mean not ready.
    """
    session = session or requests.Session()
    payload = {"jsonrpc": "2.0", "method": "eth_syncing", "params": [], "id": 1}
    try:
        resp = session.post(endpoint.execution_rpc, json=payload, timeout=timeout)
        resp.raise_for_status()
        data = resp.json()
    except (requests.exceptions.RequestException, ValueError) as e:
        logger.info("Light client not answering yet: %s", e.__class__.__name__)
        return False

    if "error" in data:
        logger.info("Light client eth_syncing error: %s", data["error"])
        return False

    result = data.get("result")
    if result is False:
        return True

    logger.info("Light client still syncing: %s", result)
    return False


def wait_light_client_ready(
    endpoint: LightClientEndpoint,
    max_polls: int = 60,
    poll_delay=datetime.timedelta(seconds=5),
    session: requests.Session | None = None,
):
    """Block until the light client is ready.

    :raise LightClientNotReady:
        Still not ready after ``max_polls`` checks
    """
    assert max_polls >= 1
    session = session or requests.Session()
    for attempt in range(1, max_polls + 1):
        if is_light_client_ready(endpoint, session=session):
            logger.info("Light client ready after %d checks", attempt)
            return
        if attempt < max_polls:
            time.sleep(poll_delay.total_seconds())

    raise LightClientNotReady(f"Light client at the configured ETH_EXECUTION_RPC not ready after {max_polls} checks")
