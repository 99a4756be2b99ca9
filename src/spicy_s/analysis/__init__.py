"""
analysis - Co-localization testing across conditions
"""

from .spicy import (
    SpicyResult,
    spicy,
    adjust_pvalues,
    significant_counts,
    format_summary,
    signed_log10_pvalue_matrix,
)

__all__ = [
    'SpicyResult',
    'spicy',
    'adjust_pvalues',
    'significant_counts',
    'format_summary',
    'signed_log10_pvalue_matrix',
]
