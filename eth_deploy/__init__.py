"""eth_deploy package root.

Deterministic contract deployments governed by a Safe multisig and a timelock.

- :py:mod:`eth_deploy.create3` predicts deployment addresses before the bytecode is final

- :py:mod:`eth_deploy.safe` builds, signs and submits Safe multisig transactions

- :py:mod:`eth_deploy.timelock` tracks delayed governance operations

- :py:mod:`eth_deploy.manifest` records what has been deployed, so deployment runs can be repeated

- :py:mod:`eth_deploy.deploy` drives the whole workflow
"""

import sys


#: Minimum required Python version to run this package
MIN_PYTHON_VERSION = (3, 10)


def _check_python_version():
    """Try early abort if the Python version is too old."""

    # Use Python tuple comparison for version numbers
    # https://stackoverflow.com/a/1093331/315168
    if sys.version_info < MIN_PYTHON_VERSION:
        raise RuntimeError(f"eth-deploy needs Python {MIN_PYTHON_VERSION[0]}.{MIN_PYTHON_VERSION[1]} or later")


_check_python_version()
