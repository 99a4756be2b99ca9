"""
data - Cell table container and configuration
"""

from .cells import CellData
from .config import SpicyConfig, SpicyError, ValidationError, ColumnNotFoundError

__all__ = [
    'CellData',
    'SpicyConfig',
    'SpicyError',
    'ValidationError',
    'ColumnNotFoundError',
]
