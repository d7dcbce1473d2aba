"""
Utility modules for the discovery core.
"""

from .events import EventEmitter

__all__ = ["EventEmitter"]
