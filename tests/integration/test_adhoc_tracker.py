#!/usr/bin/env python3
"""
AdHocTracker集成测试
在合成3D点场景上测试两视图初始化、跟踪、近零基线失败和重建图
"""

import pytest
import numpy as np
from unittest.mock import patch

from ar_tracker.frontend.adhoc_tracker import AdHocTracker
from ar_tracker.solvers.epipolar import FundamentalResult
from ar_tracker.solvers.geometry_utils import compute_reprojection_error
from ar_tracker.utils.data_structures import TrackState, TrackingFailure
from conftest import BACKGROUND, IMAGE_SIZE


def analytic_fundamental(K, R, t):
    """由真实相对位姿构造的基础矩阵"""
    tx = np.array([[0, -t[2], t[1]], [t[2], 0, -t[0]], [-t[1], t[0], 0]])
    K_inv = np.linalg.inv(K)
    return K_inv.T @ tx @ R @ K_inv


class TestAdHocTrackerIntegration:
    """AdHocTracker集成测试类"""

    @pytest.fixture(autouse=True)
    def _setup(self, adhoc_config, camera_matrix, point_scene):
        self.config = adhoc_config
        self.K = camera_matrix
        self.render = point_scene

    def _tracker(self, **overrides):
        config = dict(self.config)
        config.update(overrides)
        return AdHocTracker(config, self.K)

    def _view(self, baseline):
        """相机沿+x移动baseline后的视图"""
        image, _ = self.render(np.eye(3), np.array([-baseline, 0.0, 0.0]))
        return image

    def _assert_invariant(self, tracker):
        assert len(tracker.tracked_features) == len(tracker.correspondences)

    def _bootstrap(self, tracker):
        tracker.submit_frame(self._view(0.0))
        first = tracker.step()
        tracker.submit_frame(self._view(0.3))
        second = tracker.step()
        return first, second

    def _reprojection_errors(self, tracker):
        pose = tracker.get_pose()
        return compute_reprojection_error(tracker.get_tracked_3d_features(), tracker.get_tracked_features(),
                                          pose.R, pose.t, self.K)

    def test_first_view_is_buffered(self):
        """测试首帧只缓存第一视图"""
        tracker = self._tracker()
        tracker.submit_frame(self._view(0.0))
        result = tracker.step()

        assert not result.success
        assert result.failure is None
        assert tracker.state is TrackState.BOOTSTRAP
        assert len(tracker.tracked_features) >= self.config['min_bootstrap_features']
        self._assert_invariant(tracker)
        assert not tracker.can_calc_model_view_matrix()

    def test_two_view_bootstrap(self):
        """测试两视图初始化建图，首个跟踪帧才发布位姿"""
        tracker = self._tracker()
        _, result = self._bootstrap(tracker)

        assert result.success
        assert result.tracking_method == 'bootstrap'
        assert tracker.state is TrackState.TRACKING
        assert not tracker.can_calc_model_view_matrix()
        assert np.array_equal(tracker.get_model_view_matrix(), np.eye(4))
        self._assert_invariant(tracker)

        map_points = tracker.get_map_points()
        assert len(map_points) >= self.config['min_tracked_features']
        assert len(tracker.get_tracked_3d_features()) == len(tracker.get_tracked_features())
        assert np.all(map_points[:, 2] > 0)

        tracker.submit_frame(self._view(0.3))
        result = tracker.step()
        assert result.success
        assert result.tracking_method == 'tracking'
        assert tracker.can_calc_model_view_matrix()
        assert not np.array_equal(tracker.get_model_view_matrix(), np.eye(4))

        # 第二个相机沿+x方向，基线归一化为1
        pose = tracker.get_pose()
        assert np.allclose(pose.R, np.eye(3), atol=0.05)
        assert np.allclose(pose.camera_center(), [1.0, 0.0, 0.0], atol=0.05)

        errors = self._reprojection_errors(tracker)
        assert np.mean(errors) < 2.0
        assert np.max(errors) < self.config['max_reprojection_error'] + 1.0

    def test_tracking_after_bootstrap(self):
        """测试建图后PnP跟踪"""
        tracker = self._tracker()
        self._bootstrap(tracker)

        for baseline in (0.33, 0.36):
            tracker.submit_frame(self._view(baseline))
            result = tracker.step()
            assert result.success
            assert result.tracking_method == 'tracking'
            assert tracker.state is TrackState.TRACKING
            self._assert_invariant(tracker)

        assert tracker.get_pose().camera_center()[0] == pytest.approx(1.2, abs=0.1)
        assert np.mean(self._reprojection_errors(tracker)) < 2.0

    def test_plane_aligned_map(self):
        """测试地图对齐到主平面后位姿与地图仍然一致"""
        tracker = self._tracker(align_map_to_plane=True)
        _, result = self._bootstrap(tracker)

        assert result.success
        assert np.allclose(tracker.get_map_points().mean(axis=0), 0.0, atol=1e-6)

        tracker.submit_frame(self._view(0.3))
        assert tracker.step().success
        assert np.mean(self._reprojection_errors(tracker)) < 2.0

    def test_waits_for_enough_motion(self):
        """测试运动不足时保留缓冲等待"""
        tracker = self._tracker()
        tracker.submit_frame(self._view(0.0))
        tracker.step()
        buffered = len(tracker.tracked_features)

        tracker.submit_frame(self._view(0.0))
        result = tracker.step()

        assert result.failure is None
        assert tracker.state is TrackState.BOOTSTRAP
        assert len(tracker.tracked_features) == buffered

    def test_near_zero_baseline_fails_triangulation(self):
        """测试近零基线：三角化失败，保持Bootstrapping"""
        tracker = self._tracker(min_bootstrap_motion_px=0.0)
        F = analytic_fundamental(self.K, np.eye(3), np.array([-1.0, 0.0, 0.0]))

        def fake_fundamental(pts_a, pts_b, *args, **kwargs):
            return FundamentalResult(F=F, inlier_mask=np.ones(len(pts_a), dtype=bool), num_inliers=len(pts_a))

        with patch('ar_tracker.frontend.adhoc_tracker.estimate_fundamental', side_effect=fake_fundamental):
            tracker.submit_frame(self._view(0.0))
            tracker.step()
            tracker.submit_frame(self._view(0.001))
            result = tracker.step()

        assert result.failure is TrackingFailure.TRIANGULATION_FAILURE
        assert tracker.state is TrackState.BOOTSTRAP
        assert not tracker.can_calc_model_view_matrix()
        assert np.array_equal(tracker.get_model_view_matrix(), np.eye(4))
        assert tracker.get_last_failure() is TrackingFailure.TRIANGULATION_FAILURE
        # 缓冲已从当前帧重新开始
        assert len(tracker.tracked_features) >= self.config['min_bootstrap_features']
        self._assert_invariant(tracker)

    def test_near_zero_baseline_without_mock(self):
        """测试近零基线走几何失败路径，并从当前帧重新缓存第一视图"""
        tracker = self._tracker(min_bootstrap_motion_px=0.0)
        tracker.submit_frame(self._view(0.0))
        tracker.step()
        tracker.submit_frame(self._view(0.001))
        result = tracker.step()

        assert not result.success
        assert result.failure in (TrackingFailure.TRIANGULATION_FAILURE, TrackingFailure.DEGENERATE_GEOMETRY)
        assert tracker.get_last_failure() is result.failure
        assert tracker.state is TrackState.BOOTSTRAP
        assert not tracker.can_calc_model_view_matrix()
        assert np.array_equal(tracker.get_model_view_matrix(), np.eye(4))

        # 新的第一视图来自当前帧的检测，跟踪点与之重合
        assert len(tracker.tracked_features) >= self.config['min_bootstrap_features']
        assert np.array_equal(tracker.correspondences, tracker.tracked_features)
        self._assert_invariant(tracker)

    def test_track_loss_starts_new_map(self):
        """测试跟踪丢失后丢弃地图并重新初始化"""
        tracker = self._tracker()
        self._bootstrap(tracker)

        tracker.submit_frame(np.full((IMAGE_SIZE[1], IMAGE_SIZE[0]), BACKGROUND, dtype=np.uint8))
        result = tracker.step()

        assert result.failure is TrackingFailure.INSUFFICIENT_FEATURES
        assert tracker.state is TrackState.BOOTSTRAP
        assert len(tracker.map_points) == 0
        assert np.array_equal(tracker.get_model_view_matrix(), np.eye(4))
        self._assert_invariant(tracker)

        # 再次两视图初始化
        _, result = self._bootstrap(tracker)
        assert result.success
        assert tracker.state is TrackState.TRACKING

    def test_request_new_map(self):
        """测试手动重建图：当前跟踪点成为新的第一视图"""
        tracker = self._tracker()
        self._bootstrap(tracker)
        tracked = tracker.tracked_features.copy()

        tracker.request_new_map()

        assert tracker.state is TrackState.BOOTSTRAP
        assert len(tracker.map_points) == 0
        assert np.array_equal(tracker.tracked_features, tracked)
        self._assert_invariant(tracker)
        assert not tracker.can_calc_model_view_matrix()

        tracker.submit_frame(self._view(0.6))
        result = tracker.step()
        assert result.success
        assert tracker.state is TrackState.TRACKING

    def test_inlier_ratio_policy(self):
        """测试按PnP内点比例触发重建图"""
        tracker = self._tracker(rebootstrap_policy='inlier_ratio', min_pnp_inlier_ratio=1.01)
        self._bootstrap(tracker)

        tracker.submit_frame(self._view(0.33))
        result = tracker.step()

        assert result.failure is TrackingFailure.DEGENERATE_GEOMETRY
        assert tracker.state is TrackState.BOOTSTRAP
        assert len(tracker.tracked_features) >= self.config['min_tracked_features']
        self._assert_invariant(tracker)

    def test_reset(self):
        """测试reset清空地图与缓冲"""
        tracker = self._tracker()
        self._bootstrap(tracker)

        tracker.reset()
        tracker.reset()

        assert tracker.state is TrackState.BOOTSTRAP
        assert len(tracker.tracked_features) == 0
        assert len(tracker.map_points) == 0
        assert np.array_equal(tracker.get_model_view_matrix(), np.eye(4))
