"""
Reaper module.
Contains the stalled-job reaper.
"""

from memorymesh.reaper.main import Reaper, run

__all__ = ["Reaper", "run"]
