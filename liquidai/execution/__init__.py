"""Execution layer: gates strategies and submits them to the ledger.

Keep this package `__init__` lightweight to avoid import cycles.
Import concrete modules directly, e.g.:
  - `from liquidai.execution.coordinator import ExecutionCoordinator`
"""

__all__: list[str] = []
