"""
平面标记跟踪器
Bootstrap: 特征匹配 + 单应RANSAC定位marker
Tracking: 光流跟踪 + 单应内点筛选 + PnP位姿
"""

from typing import Dict, Any, Optional

import cv2
import numpy as np

from ..core.base_tracker import BaseTracker
from ..matchers import FeaturePipeline
from ..matchers.matcher_utils import keypoints_to_array
from ..solvers.geometry_utils import perspective_transform
from ..solvers.homography_solver import estimate_homography
from ..utils.data_converter import ImageProcessor
from ..utils.data_structures import (
    Frame, Marker, Pose, TrackState, TrackingFailure, TrackingResult
)


class PlanarTracker(BaseTracker):
    """平面marker跟踪器"""

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 camera_matrix: Optional[np.ndarray] = None,
                 feature_pipeline: Optional[FeaturePipeline] = None,
                 marker_image: Optional[np.ndarray] = None):
        super().__init__(config, camera_matrix, feature_pipeline)

        self.min_bootstrap_matches = self.config.get('min_bootstrap_matches', 15)
        self.min_tracked_features = self.config.get('min_tracked_features', 10)
        self.reproj_threshold = self.config.get('homography_reproj_threshold', 3.0)
        self.bootstrap_min_inlier_ratio = self.config.get('bootstrap_min_inlier_ratio', 0.15)
        self.tracking_min_inlier_ratio = self.config.get('tracking_min_inlier_ratio', 0.5)
        self.marker_size = self.config.get('marker_size', 1.0)
        self.marker_max_dimension = self.config.get('marker_max_dimension', 640)
        self.debug_axis_length = self.config.get('debug_axis_length', self.marker_size * 0.5)

        self.marker: Optional[Marker] = None
        self._features = np.empty((0, 2), dtype=np.float32)
        self._marker_points = np.empty((0, 2), dtype=np.float32)
        self.homography: Optional[np.ndarray] = None

        if marker_image is not None:
            self.set_marker(marker_image)

    # ------------------------------------------------------------------
    # 对外接口
    # ------------------------------------------------------------------

    @property
    def tracked_features(self) -> np.ndarray:
        return self._features

    @property
    def correspondences(self) -> np.ndarray:
        """tracked_features 对应的marker像素坐标"""
        return self._marker_points

    def set_marker(self, image: np.ndarray):
        """设置参考marker，跟踪器回到Bootstrap"""
        self._run_control(self._apply_marker, np.array(image, copy=True))

    def is_tracking(self) -> bool:
        """已设置marker即视为工作中 (Bootstrap或Tracking)"""
        return self.marker is not None

    def get_homography(self) -> Optional[np.ndarray]:
        """marker -> 当前帧的单应矩阵，Bootstrap时为None"""
        homography = self.get_snapshot().metadata.get('homography')
        return None if homography is None else homography.copy()

    def get_marker_quad(self) -> Optional[np.ndarray]:
        """marker边界在当前帧中的四边形"""
        quad = self.get_snapshot().metadata.get('quad')
        return None if quad is None else quad.copy()

    def get_tracked_features(self) -> np.ndarray:
        features = self.get_snapshot().metadata.get('features')
        return np.empty((0, 2), dtype=np.float32) if features is None else features.copy()

    # ------------------------------------------------------------------
    # 控制命令实现
    # ------------------------------------------------------------------

    def _apply_marker(self, image: np.ndarray):
        gray = ImageProcessor.to_gray(image)
        h, w = gray.shape[:2]

        # 大图缩小后检测，关键点坐标换回原始marker像素坐标
        scale = min(1.0, self.marker_max_dimension / float(max(h, w)))
        work = gray if scale == 1.0 else cv2.resize(gray, (int(round(w * scale)), int(round(h * scale))),
                                                    interpolation=cv2.INTER_AREA)

        keypoints, descriptors = self.feature_pipeline.detect_and_describe(work)
        points = keypoints_to_array(keypoints) / scale

        self.marker = Marker(
            image=gray,
            keypoints=points.astype(np.float32),
            descriptors=descriptors,
            bounding_quad=np.float32([[0, 0], [w, 0], [w, h], [0, h]]),
            size=self.marker_size
        )
        if self.marker.num_keypoints < self.min_bootstrap_matches:
            self.logger.warning(f"Marker has only {self.marker.num_keypoints} keypoints, "
                                f"bootstrap needs {self.min_bootstrap_matches} matches")
        else:
            self.logger.info(f"Marker set: {w}x{h}, {self.marker.num_keypoints} keypoints")

        self._apply_reset()

    def _reset_state(self):
        self._features = np.empty((0, 2), dtype=np.float32)
        self._marker_points = np.empty((0, 2), dtype=np.float32)
        self.homography = None

    def _is_configured(self) -> bool:
        return super()._is_configured() and self.marker is not None

    # ------------------------------------------------------------------
    # 处理
    # ------------------------------------------------------------------

    def process(self, frame: Frame) -> TrackingResult:
        gray = self._gray(frame)
        if self._state is TrackState.BOOTSTRAP:
            return self._bootstrap(gray, frame)
        return self._track(gray, frame)

    def _bootstrap(self, gray: np.ndarray, frame: Frame) -> TrackingResult:
        """在整帧中匹配marker特征，单应内点足够则进入Tracking"""
        hint = frame.metadata.get('homography_hint')
        if hint is not None:
            return self._bootstrap_from_homography(gray, frame, np.asarray(hint, dtype=np.float64))

        keypoints, descriptors = self.feature_pipeline.detect_and_describe(gray, frame.mask)
        matches = self.feature_pipeline.match_keypoints(
            keypoints, descriptors, self.marker.keypoints, self.marker.descriptors
        )
        if matches.num_matches < self.min_bootstrap_matches:
            self.logger.debug(f"Bootstrap: {matches.num_matches} matches < {self.min_bootstrap_matches}")
            return self._bootstrap_failed(frame, TrackingFailure.INSUFFICIENT_FEATURES, matches.num_matches)

        homography = estimate_homography(
            matches.mkpts1, matches.mkpts0, self.reproj_threshold, self.bootstrap_min_inlier_ratio
        )
        if homography is None:
            return self._bootstrap_failed(frame, TrackingFailure.DEGENERATE_GEOMETRY, matches.num_matches)
        if homography.num_inliers < self.min_bootstrap_matches:
            self.logger.debug(f"Bootstrap: {homography.num_inliers} inliers < {self.min_bootstrap_matches}")
            return self._bootstrap_failed(frame, TrackingFailure.INSUFFICIENT_FEATURES, homography.num_inliers)

        inliers = homography.inlier_mask
        return self._enter_tracking(gray, frame, matches.mkpts0[inliers], matches.mkpts1[inliers], homography.H)

    def _bootstrap_from_homography(self, gray: np.ndarray, frame: Frame, H: np.ndarray) -> TrackingResult:
        """用外部给定的单应把marker关键点投到当前帧，跳过匹配"""
        projected = perspective_transform(self.marker.keypoints, H).astype(np.float32)
        h, w = gray.shape[:2]
        inside = ((projected[:, 0] >= 0) & (projected[:, 0] < w) &
                  (projected[:, 1] >= 0) & (projected[:, 1] < h))
        mask = ImageProcessor.normalize_mask(frame.mask, gray.shape)
        if mask is not None and inside.any():
            px = projected[inside].astype(int)
            inside[inside] = mask[px[:, 1], px[:, 0]] > 0

        if inside.sum() < self.min_bootstrap_matches:
            return self._bootstrap_failed(frame, TrackingFailure.INSUFFICIENT_FEATURES, int(inside.sum()))

        return self._enter_tracking(gray, frame, projected[inside], self.marker.keypoints[inside], H)

    def _bootstrap_failed(self, frame: Frame, failure: TrackingFailure, num_features: int) -> TrackingResult:
        self._publish(frame, pose=None, failure=failure)
        return TrackingResult(
            success=False, state=self._state, tracking_method='bootstrap',
            num_features=num_features, failure=failure
        )

    def _enter_tracking(self, gray: np.ndarray, frame: Frame,
                        frame_points: np.ndarray, marker_points: np.ndarray,
                        H: np.ndarray) -> TrackingResult:
        self._state = TrackState.TRACKING
        self._features = np.asarray(frame_points, dtype=np.float32).reshape(-1, 2)
        self._marker_points = np.asarray(marker_points, dtype=np.float32).reshape(-1, 2)
        self.homography = H
        self.prev_gray = gray

        # 首次求解不使用先验
        pnp_result = self.pnp_solver.solve(
            self.marker.to_object_points(self._marker_points), self._features,
            self.camera_matrix, self.dist_coeffs
        )
        self._prior_pose = pnp_result.pose
        failure = None if pnp_result.success else TrackingFailure.DEGENERATE_GEOMETRY

        self.logger.info(f"Marker found with {len(self._features)} inliers, switching to tracking")
        self._publish_tracking(frame, self._prior_pose, failure, len(self._features))
        return TrackingResult(
            success=pnp_result.success, state=self._state, tracking_method='bootstrap',
            num_features=len(self._features), num_inliers=len(self._features),
            reprojection_error=pnp_result.reprojection_error, failure=failure
        )

    def _track(self, gray: np.ndarray, frame: Frame) -> TrackingResult:
        """光流跟踪上一帧特征，单应筛除外点后求解位姿"""
        flow = self.flow_tracker.track(self.prev_gray, gray, self._features)

        if not self.flow_tracker.is_tracking_reliable(flow, self.min_tracked_features):
            self.logger.info(f"Tracking lost: {flow.num_tracked} features survived "
                             f"(< {self.min_tracked_features}), back to bootstrap")
            self._lose_tracking()
            self._publish(frame, pose=None, failure=TrackingFailure.INSUFFICIENT_FEATURES)
            return TrackingResult(
                success=False, state=self._state, tracking_method='tracking',
                num_features=flow.num_tracked, failure=TrackingFailure.INSUFFICIENT_FEATURES
            )

        frame_points = flow.points[flow.status]
        marker_points = self._marker_points[flow.status]

        homography = estimate_homography(
            marker_points, frame_points, self.reproj_threshold, self.tracking_min_inlier_ratio
        )
        if homography is None:
            # 拒绝本帧更新，保留上一帧状态
            self.logger.debug("Tracking: homography rejected, keeping previous state")
            return self._keep_previous(frame, TrackingFailure.DEGENERATE_GEOMETRY, flow.num_tracked)

        inliers = homography.inlier_mask
        self._features = frame_points[inliers]
        self._marker_points = marker_points[inliers]
        self.homography = homography.H
        self.prev_gray = gray

        pnp_result = self.pnp_solver.solve(
            self.marker.to_object_points(self._marker_points), self._features,
            self.camera_matrix, self.dist_coeffs, prior_pose=self._prior_pose
        )
        if not pnp_result.success:
            return self._keep_previous(frame, TrackingFailure.DEGENERATE_GEOMETRY, len(self._features))

        self._prior_pose = pnp_result.pose
        self._publish_tracking(frame, self._prior_pose, None, homography.num_inliers)
        return TrackingResult(
            success=True, state=self._state, tracking_method='tracking',
            num_features=len(self._features), num_inliers=homography.num_inliers,
            reprojection_error=pnp_result.reprojection_error
        )

    def _lose_tracking(self):
        self._reset_state()
        self._state = TrackState.BOOTSTRAP
        self._prior_pose = None
        self.prev_gray = None

    def _keep_previous(self, frame: Frame, failure: TrackingFailure, num_features: int) -> TrackingResult:
        previous = self._published
        self._publish_tracking(frame, previous.pose, failure, previous.num_inliers)
        return TrackingResult(
            success=False, state=self._state, tracking_method='tracking',
            num_features=num_features, failure=failure
        )

    def _publish_tracking(self, frame: Frame, pose: Optional[Pose],
                          failure: Optional[TrackingFailure], num_inliers: int):
        quad = perspective_transform(self.marker.bounding_quad, self.homography).astype(np.float32)
        self._publish(
            frame, pose=pose, failure=failure,
            mask=self._marker_mask(quad, frame.image.shape[:2]),
            num_inliers=num_inliers,
            metadata={
                'homography': self.homography.copy(),
                'quad': quad,
                'features': self._features.copy(),
            }
        )

    @staticmethod
    def _marker_mask(quad: np.ndarray, shape) -> np.ndarray:
        """marker区域掩码 (255为marker内部)"""
        mask = np.zeros(shape[:2], dtype=np.uint8)
        cv2.fillPoly(mask, [np.round(quad).astype(np.int32).reshape(-1, 1, 2)], 255)
        return mask
