"""
Feature pipeline modules
"""

from .matcher_base import FeaturePipeline
from .matcher_utils import MatchingResult
from .opencv_pipeline import OpenCVFeaturePipeline, create_feature_pipeline

__all__ = [
    'FeaturePipeline',
    'MatchingResult',
    'OpenCVFeaturePipeline',
    'create_feature_pipeline'
]
