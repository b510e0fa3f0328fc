#!/usr/bin/env python3
"""
特征管线与光流跟踪单元测试
"""

import pytest
import numpy as np
import cv2

from ar_tracker.frontend.feature_tracker import FeatureTracker
from ar_tracker.matchers import MatchingResult, OpenCVFeaturePipeline, create_feature_pipeline
from ar_tracker.matchers.matcher_utils import keypoints_to_array
from conftest import BACKGROUND, make_marker_image


class TestFeaturePipeline:
    """OpenCV特征管线测试"""

    def setup_method(self):
        self.image = make_marker_image()
        self.pipeline = create_feature_pipeline({'detector': 'orb', 'max_features': 500})

    def test_detect_respects_max_features(self):
        """测试检测数量上限"""
        keypoints = self.pipeline.detect(self.image)
        assert 0 < len(keypoints) <= 500

    def test_detect_respects_mask(self):
        """测试检测掩码"""
        mask = np.zeros(self.image.shape, dtype=np.uint8)
        mask[:, :200] = 255

        points = keypoints_to_array(self.pipeline.detect(self.image, mask))

        assert len(points) > 0
        assert points[:, 0].max() < 205

    def test_self_matching(self):
        """测试图像与自身匹配"""
        keypoints, descriptors = self.pipeline.detect_and_describe(self.image)
        points = keypoints_to_array(keypoints)

        result = self.pipeline.match_keypoints(keypoints, descriptors, points, descriptors)

        assert isinstance(result, MatchingResult)
        assert result.num_matches > 50
        assert np.median(np.linalg.norm(result.mkpts0 - result.mkpts1, axis=1)) < 1e-3
        assert self.pipeline.is_match_reliable(result, min_matches=50)

    def test_empty_descriptors(self):
        """测试无描述子时返回空结果"""
        result = self.pipeline.match_keypoints([], None, np.empty((0, 2)), None)
        assert result.num_matches == 0
        assert self.pipeline.describe(self.image, []) == ([], None)

    def test_gftt_with_orb_descriptor(self):
        """测试GFTT检测 + ORB描述子组合"""
        pipeline = OpenCVFeaturePipeline({'detector': 'gftt', 'descriptor': 'orb', 'max_features': 200})
        keypoints, descriptors = pipeline.detect_and_describe(self.image)
        assert descriptors is not None
        assert len(keypoints) == len(descriptors)

    def test_unknown_detector(self):
        with pytest.raises(ValueError):
            OpenCVFeaturePipeline({'detector': 'sift'})


class TestFeatureTracker:
    """前后向光流跟踪测试"""

    def setup_method(self):
        self.tracker = FeatureTracker({'win_size': [21, 21], 'max_level': 3, 'fb_threshold': 1.0})
        canvas = np.full((480, 640), BACKGROUND, dtype=np.uint8)
        canvas[90:390, 120:520] = make_marker_image()
        self.prev = canvas
        self.points = keypoints_to_array(
            create_feature_pipeline({'detector': 'gftt', 'max_features': 200}).detect(canvas)
        )

    def test_translation_is_tracked(self):
        """测试平移被准确跟踪"""
        shift = np.float32([[1, 0, 3], [0, 1, 2]])
        current = cv2.warpAffine(self.prev, shift, (640, 480), borderValue=BACKGROUND)

        result = self.tracker.track(self.prev, current, self.points)

        assert result.num_tracked > 0.8 * len(self.points)
        displacement = result.points[result.status] - self.points[result.status]
        assert np.allclose(np.median(displacement, axis=0), [3, 2], atol=0.1)
        assert self.tracker.is_tracking_reliable(result, 10)

    def test_flat_image_loses_all_points(self):
        """测试跟踪到无纹理图像时全部失败"""
        flat = np.full((480, 640), BACKGROUND, dtype=np.uint8)

        result = self.tracker.track(self.prev, flat, self.points)

        assert result.num_tracked == 0
        assert not self.tracker.is_tracking_reliable(result, 1)

    def test_empty_input(self):
        result = self.tracker.track(self.prev, self.prev, np.empty((0, 2)))
        assert result.num_tracked == 0
        assert result.points.shape == (0, 2)
