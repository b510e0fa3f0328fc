"""
AR Tracker: marker-based and markerless camera pose tracking

Planar marker tracking (feature matching + homography + optical flow + PnP) and
ad-hoc tracking from a two-view structure-from-motion bootstrap, running on a
background processing thread and publishing render-ready model-view matrices.
"""

from .version import __version__, get_version_string

# frontend先于core导入：core.base_tracker 依赖 frontend.feature_tracker
from .frontend import PlanarTracker, AdHocTracker
from .core.base_tracker import BaseTracker
from .core.tracker_pool import TrackerPool, MarkerClassifier, DescriptorMarkerClassifier
from .utils.config_manager import ConfigManager
from .utils.data_structures import Pose, TrackState, TrackingFailure, TrackingSnapshot
from .utils.logger import setup_logging

__all__ = [
    '__version__',
    'get_version_string',
    'BaseTracker',
    'PlanarTracker',
    'AdHocTracker',
    'TrackerPool',
    'MarkerClassifier',
    'DescriptorMarkerClassifier',
    'ConfigManager',
    'Pose',
    'TrackState',
    'TrackingFailure',
    'TrackingSnapshot',
    'setup_logging'
]
