"""
Reaper module.
Contains the stuck-job reaper for reclaiming expired leases.
"""

from jobcore.reaper.main import Reaper, run

__all__ = ["Reaper", "run"]
