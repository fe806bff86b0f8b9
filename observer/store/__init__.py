from .history import SearchHistory
from .items import Store

__all__ = ["SearchHistory", "Store"]
