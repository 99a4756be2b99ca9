# src/spicy_s/__init__.py

"""
spicy_s - Spatial co-localization testing for segmented cell images
"""

# Core data structures
from .data.cells import CellData
from .data.config import SpicyConfig, SpicyError, ValidationError, ColumnNotFoundError

# Entry point
from .analysis.spicy import SpicyResult, spicy, format_summary, signed_log10_pvalue_matrix

# Import submodules
from . import data
from . import spatial
from . import stats
from . import analysis

__version__ = '0.1.0'

__all__ = [
    # Core classes
    'CellData',
    'SpicyConfig',
    'SpicyResult',

    # Errors
    'SpicyError',
    'ValidationError',
    'ColumnNotFoundError',

    # Entry point
    'spicy',
    'format_summary',
    'signed_log10_pvalue_matrix',

    # Submodules
    'data',
    'spatial',
    'stats',
    'analysis',
]
