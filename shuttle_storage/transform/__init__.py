"""
Entity transforms between remote rows and local records.
"""

from .lookup import Lookup
from .transformer import EntityTransformer, RemoteBatch

__all__ = [
    "EntityTransformer",
    "Lookup",
    "RemoteBatch",
]
