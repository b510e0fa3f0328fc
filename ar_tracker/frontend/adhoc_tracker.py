"""
无标记(ad-hoc)跟踪器
Bootstrapping: 两视图光流 + 基础矩阵 + 本质矩阵分解 + 三角化建图
Tracking: 光流跟踪地图点对应的2D特征 + PnP RANSAC
"""

from typing import Dict, Any, Optional

import cv2
import numpy as np

from ..core.base_tracker import BaseTracker
from ..matchers import FeaturePipeline
from ..matchers.matcher_utils import keypoints_to_array
from ..solvers.epipolar import (
    decompose_essential, essential_from_fundamental, estimate_fundamental, select_pose_hypothesis
)
from ..solvers.geometry_utils import plane_alignment_transform, transform_points
from ..utils.data_converter import ImageProcessor
from ..utils.data_structures import (
    Frame, Pose, TrackState, TrackingFailure, TrackingResult
)


class AdHocTracker(BaseTracker):
    """单目无标记跟踪器，地图以第一视图相机（或对齐后的主平面）为世界坐标系"""

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 camera_matrix: Optional[np.ndarray] = None,
                 feature_pipeline: Optional[FeaturePipeline] = None):
        super().__init__(config, camera_matrix, feature_pipeline)

        self.min_bootstrap_features = self.config.get('min_bootstrap_features', 50)
        self.min_tracked_features = self.config.get('min_tracked_features', 30)
        self.min_bootstrap_motion_px = self.config.get('min_bootstrap_motion_px', 10.0)
        self.fundamental_threshold = self.config.get('fundamental_threshold', 1.0)
        self.fundamental_confidence = self.config.get('fundamental_confidence', 0.99)
        self.fundamental_min_inlier_ratio = self.config.get('fundamental_min_inlier_ratio', 0.5)
        self.validation = dict(
            max_reprojection_error=self.config.get('max_reprojection_error', 4.0),
            min_valid_ratio=self.config.get('min_valid_ratio', 0.75),
            min_parallax_deg=self.config.get('min_parallax_deg', 1.0)
        )
        self.align_map_to_plane = self.config.get('align_map_to_plane', True)
        self.rebootstrap_policy = self.config.get('rebootstrap_policy', 'min_features')
        self.min_pnp_inlier_ratio = self.config.get('min_pnp_inlier_ratio', 0.5)
        self.exclusion_radius = self.config.get('exclusion_radius', 7)

        # Bootstrapping: 第一视图点与当前位置一一对应
        self._first_view = np.empty((0, 2), dtype=np.float32)
        self._features = np.empty((0, 2), dtype=np.float32)
        # Tracking: 地图点及每个特征对应的地图点索引
        self.map_points = np.empty((0, 3), dtype=np.float64)
        self._map_indices = np.empty(0, dtype=int)

    # ------------------------------------------------------------------
    # 对外接口
    # ------------------------------------------------------------------

    @property
    def tracked_features(self) -> np.ndarray:
        return self._features

    @property
    def correspondences(self) -> np.ndarray:
        """Bootstrapping时为第一视图坐标，Tracking时为地图点索引"""
        if self._state is TrackState.TRACKING:
            return self._map_indices
        return self._first_view

    def request_new_map(self):
        """丢弃当前地图，以当前跟踪点为第一视图重新初始化"""
        self._run_control(self._apply_new_map)

    def is_tracking(self) -> bool:
        return self._state is TrackState.TRACKING

    def get_map_points(self) -> np.ndarray:
        points = self.get_snapshot().metadata.get('map_points')
        return np.empty((0, 3)) if points is None else points.copy()

    def get_tracked_features(self) -> np.ndarray:
        features = self.get_snapshot().metadata.get('features')
        return np.empty((0, 2), dtype=np.float32) if features is None else features.copy()

    def get_tracked_3d_features(self) -> np.ndarray:
        """与 get_tracked_features() 一一对应的地图点"""
        points = self.get_snapshot().metadata.get('tracked_points_3d')
        return np.empty((0, 3)) if points is None else points.copy()

    # ------------------------------------------------------------------
    # 状态管理
    # ------------------------------------------------------------------

    def _reset_state(self):
        self._first_view = np.empty((0, 2), dtype=np.float32)
        self._features = np.empty((0, 2), dtype=np.float32)
        self.map_points = np.empty((0, 3), dtype=np.float64)
        self._map_indices = np.empty(0, dtype=int)

    def _apply_new_map(self):
        if self._state is not TrackState.TRACKING or self.prev_gray is None:
            return
        self.logger.info("New map requested")
        self._start_new_map(self.prev_gray, None, self._features)
        self._publish(None, pose=None)

    def _start_new_map(self, gray: np.ndarray, mask: Optional[np.ndarray], points: np.ndarray):
        """
        newmap: 当前跟踪点作为新的第一视图

        存活点不足时在当前帧补检测，新点避开已有点附近。
        """
        points = np.asarray(points, dtype=np.float32).reshape(-1, 2)
        if len(points) < self.min_tracked_features:
            detect_mask = ImageProcessor.normalize_mask(mask, gray.shape)
            if detect_mask is None:
                detect_mask = np.full(gray.shape[:2], 255, dtype=np.uint8)
            for x, y in points:
                cv2.circle(detect_mask, (int(x), int(y)), self.exclusion_radius, 0, -1)
            fresh = keypoints_to_array(self.feature_pipeline.detect(gray, detect_mask))
            points = np.vstack([points, fresh.astype(np.float32)])

        self._reset_state()
        self._state = TrackState.BOOTSTRAP
        self._prior_pose = None
        self.prev_gray = gray
        self._first_view = points.copy()
        self._features = points.copy()

    # ------------------------------------------------------------------
    # 处理
    # ------------------------------------------------------------------

    def process(self, frame: Frame) -> TrackingResult:
        gray = self._gray(frame)
        if self._state is TrackState.TRACKING:
            return self._track(gray, frame)
        if len(self._first_view) == 0 or self.prev_gray is None:
            return self._store_first_view(gray, frame)
        return self._bootstrap(gray, frame)

    def _store_first_view(self, gray: np.ndarray, frame: Frame,
                          failure: Optional[TrackingFailure] = None) -> TrackingResult:
        """检测关键点作为第一视图"""
        self._reset_state()
        self._prior_pose = None
        points = keypoints_to_array(self.feature_pipeline.detect(gray, frame.mask))

        if len(points) < self.min_bootstrap_features:
            self.logger.debug(f"First view: {len(points)} keypoints < {self.min_bootstrap_features}")
            self.prev_gray = None
            failure = failure or TrackingFailure.INSUFFICIENT_FEATURES
        else:
            self._first_view = points.astype(np.float32)
            self._features = self._first_view.copy()
            self.prev_gray = gray

        self._publish(frame, pose=None, failure=failure)
        return TrackingResult(
            success=False, state=self._state, tracking_method='bootstrap',
            num_features=len(self._features), failure=failure
        )

    def _restart(self, gray: np.ndarray, frame: Frame, failure: TrackingFailure) -> TrackingResult:
        """丢弃缓冲，从当前帧重新开始"""
        self.logger.debug(f"Bootstrap restarted: {failure.value}")
        return self._store_first_view(gray, frame, failure)

    def _bootstrap(self, gray: np.ndarray, frame: Frame) -> TrackingResult:
        flow = self.flow_tracker.track(self.prev_gray, gray, self._features)
        if not self.flow_tracker.is_tracking_reliable(flow, self.min_tracked_features):
            return self._restart(gray, frame, TrackingFailure.INSUFFICIENT_FEATURES)

        self._first_view = self._first_view[flow.status]
        self._features = flow.points[flow.status]
        self.prev_gray = gray

        motion = float(np.median(np.linalg.norm(self._features - self._first_view, axis=1)))
        if motion < self.min_bootstrap_motion_px:
            # 基线不足，保留缓冲继续等待
            self._publish(frame, pose=None, metadata={'bootstrap_motion_px': motion})
            return TrackingResult(
                success=False, state=self._state, tracking_method='bootstrap',
                num_features=len(self._features)
            )

        pts0 = self._undistort_points(self._first_view)
        pts1 = self._undistort_points(self._features)

        fundamental = estimate_fundamental(
            pts0, pts1, self.fundamental_threshold, self.fundamental_confidence,
            self.fundamental_min_inlier_ratio
        )
        if fundamental is None:
            return self._restart(gray, frame, TrackingFailure.DEGENERATE_GEOMETRY)

        inliers = fundamental.inlier_mask
        E = essential_from_fundamental(fundamental.F, self.camera_matrix)
        selected = select_pose_hypothesis(
            decompose_essential(E), pts0[inliers], pts1[inliers], self.camera_matrix, **self.validation
        )
        if selected is None:
            self.logger.info("Bootstrap triangulation failed, restarting")
            return self._restart(gray, frame, TrackingFailure.TRIANGULATION_FAILURE)

        hypothesis, triangulation = selected
        valid = triangulation.valid_mask
        if triangulation.num_valid < self.min_tracked_features:
            return self._restart(gray, frame, TrackingFailure.TRIANGULATION_FAILURE)

        map_points = triangulation.points_3d[valid]
        pose = Pose(R=hypothesis.R.copy(), t=hypothesis.t.copy())
        if self.align_map_to_plane:
            map_points, pose = self._align_to_plane(map_points, pose)

        self.map_points = map_points
        self._features = self._features[inliers][valid]
        self._map_indices = np.arange(len(map_points))
        self._first_view = np.empty((0, 2), dtype=np.float32)
        self._state = TrackState.TRACKING
        self._prior_pose = pose

        self.logger.info(f"Map initialised with {len(map_points)} points "
                         f"(hypothesis {hypothesis.tag}, parallax {triangulation.parallax_deg:.1f}deg), "
                         f"switching to tracking")
        # 初始化帧只把假设位姿作为PnP先验，首个位姿由跟踪求解发布
        self._publish_tracking(frame, None, None, len(map_points))
        return TrackingResult(
            success=True, state=self._state, tracking_method='bootstrap',
            num_features=len(self._features), num_inliers=len(map_points),
            reprojection_error=triangulation.reprojection_error
        )

    @staticmethod
    def _align_to_plane(map_points: np.ndarray, pose: Pose):
        """地图变换到主平面坐标系，位姿同步变换"""
        R_align, T_align = plane_alignment_transform(map_points)
        aligned = transform_points(map_points, R_align, T_align)
        # x_cam = R p + t,  p = R_align^T (p_plane - T_align)
        R = pose.R @ R_align.T
        t = pose.t - R @ T_align
        return aligned, Pose(R=R, t=t)

    def _track(self, gray: np.ndarray, frame: Frame) -> TrackingResult:
        flow = self.flow_tracker.track(self.prev_gray, gray, self._features)
        features = flow.points[flow.status]
        indices = self._map_indices[flow.status]

        if not self.flow_tracker.is_tracking_reliable(flow, self.min_tracked_features):
            self.logger.info(f"Tracking lost: {flow.num_tracked} features survived "
                             f"(< {self.min_tracked_features}), building new map")
            return self._new_map(gray, frame, features, TrackingFailure.INSUFFICIENT_FEATURES)

        pnp_result = self.pnp_solver.solve(
            self.map_points[indices], features, self.camera_matrix, self.dist_coeffs,
            prior_pose=self._prior_pose, use_ransac=True
        )

        self._features = features
        self._map_indices = indices
        self.prev_gray = gray

        if not pnp_result.success:
            previous = self._published
            self._publish_tracking(frame, previous.pose, TrackingFailure.DEGENERATE_GEOMETRY, 0)
            return TrackingResult(
                success=False, state=self._state, tracking_method='tracking',
                num_features=len(features), failure=TrackingFailure.DEGENERATE_GEOMETRY
            )

        inlier_ratio = pnp_result.num_inliers / len(features)
        if self.rebootstrap_policy == 'inlier_ratio' and inlier_ratio < self.min_pnp_inlier_ratio:
            self.logger.info(f"PnP inlier ratio {inlier_ratio:.2f} < {self.min_pnp_inlier_ratio}, "
                             f"building new map")
            return self._new_map(gray, frame, features, TrackingFailure.DEGENERATE_GEOMETRY)

        self._features = features[pnp_result.inliers]
        self._map_indices = indices[pnp_result.inliers]
        self._prior_pose = pnp_result.pose

        self._publish_tracking(frame, self._prior_pose, None, pnp_result.num_inliers)
        return TrackingResult(
            success=True, state=self._state, tracking_method='tracking',
            num_features=len(self._features), num_inliers=pnp_result.num_inliers,
            reprojection_error=pnp_result.reprojection_error
        )

    def _new_map(self, gray: np.ndarray, frame: Frame, points: np.ndarray,
                 failure: TrackingFailure) -> TrackingResult:
        self._start_new_map(gray, frame.mask, points)
        self._publish(frame, pose=None, failure=failure)
        return TrackingResult(
            success=False, state=self._state, tracking_method='tracking',
            num_features=len(self._features), failure=failure
        )

    def _publish_tracking(self, frame: Frame, pose: Optional[Pose],
                          failure: Optional[TrackingFailure], num_inliers: int):
        self._publish(
            frame, pose=pose, failure=failure, num_inliers=num_inliers,
            metadata={
                'map_points': self.map_points.copy(),
                'features': self._features.copy(),
                'tracked_points_3d': self.map_points[self._map_indices],
            }
        )
