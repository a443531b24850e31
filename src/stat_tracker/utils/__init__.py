"""
Shared helpers for the stat tracker packages.
"""

from .atomic_json import atomic_write_json, read_json

__all__ = ['atomic_write_json', 'read_json']
