"""Safe multisig wallet support.

- Safe transaction hashing, see :py:mod:`eth_deploy.safe.tx`

- Cosigner signature collection, see :py:mod:`eth_deploy.safe.signatures`

- Submitting fully signed transactions, see :py:mod:`eth_deploy.safe.execute`

- Hand-off files for an offline signing ceremony, see :py:mod:`eth_deploy.safe.proposal`

Only Safe v1.3.0 and later contracts are supported.
"""
