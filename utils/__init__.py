"""
Utility modules for threadmem.
"""

from .events import EventEmitter

__all__ = ["EventEmitter"]
