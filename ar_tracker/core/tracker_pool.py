"""
跟踪器池
识别画面中出现的marker，为每个marker维护一个PlanarTracker
"""

from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional

import numpy as np

from ..frontend.planar_tracker import PlanarTracker
from ..matchers import FeaturePipeline, create_feature_pipeline
from ..solvers.geometry_utils import projection_matrix_from_intrinsics
from ..utils.data_converter import ImageProcessor
from ..utils.data_structures import TrackingSnapshot
from ..utils.logger import get_logger


class MarkerClassifier(ABC):
    """marker识别接口：判断图像中出现的是哪个marker"""

    @abstractmethod
    def detect_marker_in_image(self, image: np.ndarray, mask: Optional[np.ndarray] = None) -> Optional[str]:
        """
        识别图像中的marker

        Args:
            image: 输入图像
            mask: 可选检测区域掩码，已被跟踪的marker区域置0

        Returns:
            marker标签，未识别返回None
        """
        pass

    @abstractmethod
    def get_marker(self, label: str) -> np.ndarray:
        """按标签取marker图像"""
        pass


class DescriptorMarkerClassifier(MarkerClassifier):
    """按描述子匹配数投票的marker识别"""

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 feature_pipeline: Optional[FeaturePipeline] = None):
        self.config = config or {}
        self.feature_pipeline = feature_pipeline or create_feature_pipeline(self.config.get('features', {}))
        self.min_matches = self.config.get('min_classification_matches', 20)
        self.markers: Dict[str, np.ndarray] = {}
        self._descriptors: Dict[str, np.ndarray] = {}

    def add_marker(self, label: str, image: np.ndarray):
        gray = ImageProcessor.to_gray(image)
        keypoints, descriptors = self.feature_pipeline.detect_and_describe(gray)
        self.markers[label] = gray
        self._descriptors[label] = descriptors

    def detect_marker_in_image(self, image: np.ndarray, mask: Optional[np.ndarray] = None) -> Optional[str]:
        keypoints, descriptors = self.feature_pipeline.detect_and_describe(ImageProcessor.to_gray(image), mask)
        if descriptors is None or len(descriptors) == 0:
            return None

        best_label, best_count = None, 0
        for label, marker_descriptors in self._descriptors.items():
            if marker_descriptors is None or len(marker_descriptors) < 2:
                continue
            count = len(self.feature_pipeline.match(descriptors, marker_descriptors))
            if count > best_count:
                best_label, best_count = label, count

        return best_label if best_count >= self.min_matches else None

    def get_marker(self, label: str) -> np.ndarray:
        return self.markers[label]


class TrackerPool:
    """管理多个marker跟踪器和marker识别器"""

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 camera_matrix: Optional[np.ndarray] = None,
                 classifier: Optional[MarkerClassifier] = None,
                 feature_pipeline: Optional[FeaturePipeline] = None,
                 tracker_config: Optional[Dict[str, Any]] = None):
        self.config = config or {}
        self.logger = get_logger('TrackerPool')
        self.camera_matrix = None if camera_matrix is None else np.asarray(camera_matrix, dtype=np.float64)
        self.classifier = classifier
        self.feature_pipeline = feature_pipeline
        self.tracker_config = tracker_config or {}

        self.max_trackers = self.config.get('max_trackers', 4)
        self.near = self.config.get('near', 0.01)
        self.far = self.config.get('far', 100.0)

        self.trackers: Dict[str, PlanarTracker] = {}
        self.debug = False
        self.running = False

    def add_marker(self, label: str, image: np.ndarray) -> Optional[PlanarTracker]:
        """为marker创建跟踪器，已存在或池满时返回None"""
        if label in self.trackers:
            return None
        if len(self.trackers) >= self.max_trackers:
            self.logger.warning(f"Tracker pool full ({self.max_trackers}), marker '{label}' ignored")
            return None

        tracker = PlanarTracker(self.tracker_config, self.camera_matrix, self.feature_pipeline, marker_image=image)
        tracker.set_debug(self.debug)
        if self.running:
            tracker.start()
        self.trackers[label] = tracker
        self.logger.info(f"Tracker created for marker '{label}'")
        return tracker

    def submit_frame(self, image: np.ndarray, mask: Optional[np.ndarray] = None) -> Optional[str]:
        """
        分发一帧到所有跟踪器；没有marker处于跟踪状态时运行识别

        Returns:
            本帧新识别出的marker标签
        """
        for tracker in self.trackers.values():
            tracker.submit_frame(image, mask)

        if self.classifier is None or len(self.trackers) >= self.max_trackers:
            return None
        if any(tracker.can_calc_model_view_matrix() for tracker in self.trackers.values()):
            return None

        label = self.classifier.detect_marker_in_image(image, self.get_marker_mask(image.shape[:2], mask))
        if label is None or label in self.trackers:
            return None

        tracker = self.add_marker(label, self.classifier.get_marker(label))
        if tracker is not None:
            tracker.submit_frame(image, mask)
        return label

    def get_marker_mask(self, shape, mask: Optional[np.ndarray] = None) -> np.ndarray:
        """有效区域中去掉已被跟踪的marker区域"""
        combined = ImageProcessor.normalize_mask(mask, shape)
        if combined is None:
            combined = np.full(shape[:2], 255, dtype=np.uint8)
        for tracker in self.trackers.values():
            marker_mask = tracker.get_mask()
            if marker_mask is not None and marker_mask.shape == combined.shape:
                combined[marker_mask > 0] = 0
        return combined

    def step(self) -> Dict[str, Any]:
        """同步驱动所有跟踪器处理一帧"""
        return {label: tracker.step() for label, tracker in self.trackers.items()}

    def start(self):
        self.running = True
        for tracker in self.trackers.values():
            tracker.start()

    def stop(self):
        for tracker in self.trackers.values():
            tracker.stop()
        self.running = False

    def set_debug(self, enabled: bool):
        self.debug = enabled
        for tracker in self.trackers.values():
            tracker.set_debug(enabled)

    def set_camera_matrix(self, camera_matrix: np.ndarray):
        self.camera_matrix = np.asarray(camera_matrix, dtype=np.float64)
        for tracker in self.trackers.values():
            tracker.set_camera_matrix(self.camera_matrix)

    def get_trackers(self) -> List[PlanarTracker]:
        return list(self.trackers.values())

    def get_results(self) -> Dict[str, TrackingSnapshot]:
        return {label: tracker.get_snapshot() for label, tracker in self.trackers.items()}

    def projection_matrix(self, width: int, height: int) -> np.ndarray:
        """渲染用OpenGL投影矩阵"""
        if self.camera_matrix is None:
            raise ValueError("Camera matrix not set")
        return projection_matrix_from_intrinsics(self.camera_matrix, width, height, self.near, self.far)
