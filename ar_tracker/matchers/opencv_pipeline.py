"""
OpenCV特征管线
二进制描述子(ORB/BRISK) + 暴力汉明匹配
"""

import logging
from typing import Dict, Any, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from .matcher_base import FeaturePipeline
from .matcher_utils import ratio_test
from ..utils.data_converter import ImageProcessor

logger = logging.getLogger('ARTracker.matchers')


class OpenCVFeaturePipeline(FeaturePipeline):
    """可配置的OpenCV检测器/描述子组合"""

    DETECTORS = ('orb', 'gftt', 'fast', 'brisk')
    DESCRIPTORS = ('orb', 'brisk')

    def __init__(self, config: Dict[str, Any]):
        super().__init__(config)
        self.detector_type = config.get('detector', 'orb')
        self.descriptor_type = config.get('descriptor', 'orb')
        self.max_features = config.get('max_features', 1000)
        self.ratio = config.get('ratio_test', 0.8)
        self.max_distance = config.get('max_distance', None)

        if self.detector_type not in self.DETECTORS:
            raise ValueError(f"Unknown detector '{self.detector_type}', expected one of {self.DETECTORS}")
        if self.descriptor_type not in self.DESCRIPTORS:
            raise ValueError(f"Unknown descriptor '{self.descriptor_type}', expected one of {self.DESCRIPTORS}")

        self.detector = self._create_detector()
        self.extractor = self._create_extractor()
        self.matcher = cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=False)

    def _create_detector(self):
        if self.detector_type == 'orb':
            return cv2.ORB_create(nfeatures=self.max_features)
        if self.detector_type == 'gftt':
            return cv2.GFTTDetector_create(
                maxCorners=self.max_features,
                qualityLevel=self.config.get('quality_level', 0.01),
                minDistance=self.config.get('min_distance', 7)
            )
        if self.detector_type == 'fast':
            return cv2.FastFeatureDetector_create(threshold=self.config.get('fast_threshold', 20))
        return cv2.BRISK_create()

    def _create_extractor(self):
        if self.descriptor_type == 'orb':
            if self.detector_type == 'orb':
                return self.detector
            return cv2.ORB_create(nfeatures=self.max_features)
        if self.detector_type == 'brisk':
            return self.detector
        return cv2.BRISK_create()

    def detect(self, image: np.ndarray, mask: Optional[np.ndarray] = None) -> List[cv2.KeyPoint]:
        gray = ImageProcessor.to_gray(image)
        mask = ImageProcessor.normalize_mask(mask, gray.shape)
        keypoints = self.detector.detect(gray, mask)
        keypoints = sorted(keypoints, key=lambda kp: kp.response, reverse=True)
        return list(keypoints[:self.max_features])

    def describe(self, image: np.ndarray,
                 keypoints: Sequence[cv2.KeyPoint]) -> Tuple[List[cv2.KeyPoint], Optional[np.ndarray]]:
        if len(keypoints) == 0:
            return [], None
        gray = ImageProcessor.to_gray(image)
        keypoints, descriptors = self.extractor.compute(gray, list(keypoints))
        return list(keypoints), descriptors

    def match(self, query_descriptors: np.ndarray, train_descriptors: np.ndarray) -> List[cv2.DMatch]:
        knn_matches = self.matcher.knnMatch(query_descriptors, train_descriptors, k=2)
        matches = ratio_test(knn_matches, self.ratio)
        if self.max_distance is not None:
            matches = [m for m in matches if m.distance <= self.max_distance]
        return matches


def create_feature_pipeline(config: Optional[Dict[str, Any]] = None) -> FeaturePipeline:
    """按配置创建特征管线"""
    config = config or {}
    pipeline = OpenCVFeaturePipeline(config)
    logger.debug(f"Feature pipeline: detector={pipeline.detector_type}, descriptor={pipeline.descriptor_type}")
    return pipeline
