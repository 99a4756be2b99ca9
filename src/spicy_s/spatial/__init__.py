"""
spatial - Spatial statistics for spicy_s

point : Centroid-based point pattern analysis
    Cross-type K/L functions per image and the images x pairs
    co-localization matrix built from them.
"""

from . import point

__all__ = [
    'point',
]
