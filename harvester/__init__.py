"""
Cookie harvester: scheduled, concurrency-safe cookie collection with a
shared headless browser.

Usage:
    from harvester import CookieHarvester, HarvesterConfig

    async with CookieHarvester(HarvesterConfig.from_env()) as harvester:
        snapshot = harvester.get_snapshot()
"""

from harvester.browser.config import HarvesterConfig
from harvester.service import CookieHarvester, HarvesterStatus

__all__ = ["CookieHarvester", "HarvesterConfig", "HarvesterStatus"]

__version__ = "1.0.0"
