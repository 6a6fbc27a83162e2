"""Data layer package.

Keep this package `__init__` lightweight to avoid import cycles.
Import concrete modules directly, e.g.:
  - `from liquidai.data.mongo import MongoManager`
  - `from liquidai.data.market_data import MarketObserver`
"""

__all__: list[str] = []
