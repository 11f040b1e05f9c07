"""Remote data service contract and the aiohttp REST client."""

from .base import DataService
from .http import HttpDataService, classify_status

__all__ = ["DataService", "HttpDataService", "classify_status"]
