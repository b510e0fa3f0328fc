"""
Frontend modules
"""

from .feature_tracker import FeatureTracker, FlowResult
from .planar_tracker import PlanarTracker
from .adhoc_tracker import AdHocTracker

__all__ = [
    'FeatureTracker',
    'FlowResult',
    'PlanarTracker',
    'AdHocTracker'
]
