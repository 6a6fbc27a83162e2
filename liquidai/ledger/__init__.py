"""Proposal ledger (only place that holds signing identities).

Keep this package `__init__` lightweight to avoid import cycles.
Import concrete modules directly, e.g.:
  - `from liquidai.ledger.vault import ProposalLedger`
  - `from liquidai.ledger.client import SimulatedLedgerClient`
  - `from liquidai.ledger.web3_client import Web3LedgerClient`
"""

__all__: list[str] = []
