"""
跟踪器基类
帧提交、处理线程、控制命令和状态快照发布的通用实现
"""

import threading
import time
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from typing import Dict, Any, Optional, Callable

import cv2
import numpy as np

from .frame_mailbox import FrameMailbox
from ..frontend.feature_tracker import FeatureTracker
from ..matchers import FeaturePipeline, create_feature_pipeline
from ..solvers.pnp_solver import PnPSolver
from ..utils.data_converter import ImageProcessor
from ..utils.data_structures import (
    Frame, Pose, TrackState, TrackingFailure, TrackingResult, TrackingSnapshot
)
from ..utils.logger import get_logger
from ..utils.visualization import draw_debug_overlay


class BaseTracker(ABC):
    """
    跟踪器基类

    线程模型：
        submit_frame() 可在任意线程调用，只覆盖单槽邮箱中的最新帧；
        process() 只在处理线程（或调用 step() 的线程）中执行，独占内部跟踪状态；
        对外结果通过 TrackingSnapshot 整体替换发布，getter 返回副本。
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None,
                 camera_matrix: Optional[np.ndarray] = None,
                 feature_pipeline: Optional[FeaturePipeline] = None):
        self.config = config or {}
        self.logger = get_logger(type(self).__name__)

        self.camera_matrix = self._as_camera_matrix(camera_matrix)
        dist_coeffs = self.config.get('dist_coeffs')
        self.dist_coeffs = None if dist_coeffs is None else np.asarray(dist_coeffs, dtype=np.float64).reshape(-1, 1)

        # 组件
        self.feature_pipeline = feature_pipeline or create_feature_pipeline(self.config.get('features', {}))
        self.flow_tracker = FeatureTracker(self.config.get('optical_flow', {}))
        self.pnp_solver = PnPSolver(self.config.get('pnp_solver', {}))

        self.debug = bool(self.config.get('debug', False))
        self.debug_axis_length = self.config.get('debug_axis_length', 0.5)

        # 处理线程独占的状态
        self._state = TrackState.BOOTSTRAP
        self._prior_pose: Optional[Pose] = None
        self.prev_gray: Optional[np.ndarray] = None

        # 跨线程共享
        self._mailbox = FrameMailbox()
        self._commands = deque()
        self._command_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._snapshot = TrackingSnapshot()
        self._frame_counter = 0

        self.processing_thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self.poll_timeout = self.config.get('poll_timeout', 0.5)

        # 性能统计
        self.tracking_stats = defaultdict(lambda: deque(maxlen=1000))

    # ------------------------------------------------------------------
    # 线程生命周期
    # ------------------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self.processing_thread is not None and self.processing_thread.is_alive()

    def start(self) -> bool:
        """启动处理线程"""
        if self.is_running:
            self.logger.warning("Processing thread already running")
            return True

        self._stop_event.clear()
        self.processing_thread = threading.Thread(
            target=self._processing_loop, name=f'{type(self).__name__}-worker'
        )
        self.processing_thread.daemon = True
        self.processing_thread.start()

        self.logger.info("Processing thread started")
        return True

    def stop(self, timeout: float = 2.0):
        """停止处理线程，线程退出后按顺序执行仍在排队的控制命令"""
        if self.processing_thread is None:
            return

        self._stop_event.set()
        self._mailbox.wake()
        self.processing_thread.join(timeout=timeout)
        if self.processing_thread.is_alive():
            # 线程仍可能在处理帧，命令留给它或下一次 step()
            self.logger.warning("Processing thread did not stop within timeout")
            self.processing_thread = None
            return
        self.processing_thread = None
        self._drain_commands()

        self.logger.info("Processing thread stopped")

    def _processing_loop(self):
        """处理主循环：等待新帧，先执行排队的控制命令，再处理帧"""
        self.logger.debug("Processing loop started")

        while not self._stop_event.is_set():
            frame = self._mailbox.take(timeout=self.poll_timeout)
            self._drain_commands()
            if frame is None or self._stop_event.is_set():
                continue
            try:
                self._process_frame(frame)
            except Exception as e:
                self.logger.error(f"Frame {frame.frame_id} processing failed: {e}", exc_info=True)

        self.logger.debug("Processing loop finished")

    def step(self, timeout: Optional[float] = 0.0) -> Optional[TrackingResult]:
        """
        同步执行一步处理（无处理线程时使用）

        Args:
            timeout: 等待新帧的时间，0表示不等待

        Returns:
            本步结果，没有新帧时返回None
        """
        self._drain_commands()
        frame = self._mailbox.take(timeout=timeout)
        if frame is None:
            return None
        return self._process_frame(frame)

    # ------------------------------------------------------------------
    # 输入
    # ------------------------------------------------------------------

    def submit_frame(self, image: np.ndarray, mask: Optional[np.ndarray] = None,
                     timestamp: Optional[float] = None, **metadata) -> int:
        """
        提交一帧（拷贝），覆盖尚未处理的旧帧

        Returns:
            分配的帧序号
        """
        with self._command_lock:
            frame_id = self._frame_counter
            self._frame_counter += 1

        frame = Frame(
            image=np.array(image, copy=True),
            mask=None if mask is None else np.array(mask, copy=True),
            frame_id=frame_id,
            timestamp=time.time() if timestamp is None else timestamp,
            metadata=metadata
        )
        self._mailbox.put(frame)
        return frame_id

    # ------------------------------------------------------------------
    # 控制命令
    # ------------------------------------------------------------------

    def _run_control(self, command: Callable, *args):
        """处理线程内或无处理线程时立即执行，否则排队到下一步开始时执行"""
        if not self.is_running or threading.current_thread() is self.processing_thread:
            command(*args)
            return

        with self._command_lock:
            self._commands.append((command, args))
        self._mailbox.wake()

    def _drain_commands(self):
        while True:
            with self._command_lock:
                if not self._commands:
                    return
                command, args = self._commands.popleft()
            command(*args)

    def reset(self):
        """回到Bootstrap状态并清空跟踪数据，可重复调用"""
        self._run_control(self._apply_reset)

    def set_camera_matrix(self, camera_matrix: np.ndarray, dist_coeffs: Optional[np.ndarray] = None):
        """设置相机内参，下一帧起生效"""
        self._run_control(self._apply_camera_matrix, self._as_camera_matrix(camera_matrix), dist_coeffs)

    def set_debug(self, enabled: bool):
        """开关调试画面输出"""
        self._run_control(self._apply_debug, bool(enabled))

    def _apply_reset(self):
        self._reset_state()
        self._state = TrackState.BOOTSTRAP
        self._prior_pose = None
        self.prev_gray = None
        self._publish(None, pose=None)
        self.logger.debug("Tracker reset")

    def _apply_camera_matrix(self, camera_matrix: Optional[np.ndarray], dist_coeffs: Optional[np.ndarray]):
        self.camera_matrix = camera_matrix
        if dist_coeffs is not None:
            self.dist_coeffs = np.asarray(dist_coeffs, dtype=np.float64).reshape(-1, 1)

    def _apply_debug(self, enabled: bool):
        self.debug = enabled

    @staticmethod
    def _as_camera_matrix(camera_matrix: Optional[np.ndarray]) -> Optional[np.ndarray]:
        if camera_matrix is None:
            return None
        return np.asarray(camera_matrix, dtype=np.float64).reshape(3, 3)

    # ------------------------------------------------------------------
    # 处理
    # ------------------------------------------------------------------

    def _process_frame(self, frame: Frame) -> TrackingResult:
        start_time = time.time()

        if not self._is_configured():
            self.logger.warning("Tracker not configured, frame ignored")
            result = TrackingResult(
                success=False, state=self._state, tracking_method='noop',
                failure=TrackingFailure.CONFIGURATION_ERROR
            )
            self._publish(frame, pose=None, failure=TrackingFailure.CONFIGURATION_ERROR)
        else:
            result = self.process(frame)

        result.processing_time = (time.time() - start_time) * 1000
        self.tracking_stats[result.tracking_method].append(result.processing_time)
        self.tracking_stats['total_time'].append(result.processing_time)
        return result

    def _is_configured(self) -> bool:
        return self.camera_matrix is not None

    @property
    def state(self) -> TrackState:
        return self._state

    @abstractmethod
    def process(self, frame: Frame) -> TrackingResult:
        """
        处理一帧，推进状态机

        Args:
            frame: 输入帧

        Returns:
            本步处理结果，失败分类写在 failure 字段
        """
        pass

    @abstractmethod
    def _reset_state(self):
        """清空跟踪器自身的跟踪数据"""
        pass

    @property
    @abstractmethod
    def tracked_features(self) -> np.ndarray:
        """当前帧中跟踪的2D特征 [N, 2]"""
        pass

    @property
    @abstractmethod
    def correspondences(self) -> np.ndarray:
        """与 tracked_features 一一对应的参考数据"""
        pass

    def _undistort_points(self, points: np.ndarray) -> np.ndarray:
        """去畸变后仍以像素坐标表示"""
        points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        if self.dist_coeffs is None or len(points) == 0:
            return points
        return cv2.undistortPoints(
            points.reshape(-1, 1, 2), self.camera_matrix, self.dist_coeffs, P=self.camera_matrix
        ).reshape(-1, 2)

    # ------------------------------------------------------------------
    # 发布与读取
    # ------------------------------------------------------------------

    def _publish(self, frame: Optional[Frame], pose: Optional[Pose],
                 failure: Optional[TrackingFailure] = None,
                 mask: Optional[np.ndarray] = None,
                 num_inliers: int = 0,
                 metadata: Optional[Dict[str, Any]] = None):
        """组装新快照并整体替换"""
        output_frame = None
        if self.debug and frame is not None:
            output_frame = self._render_debug(frame, pose, metadata or {})

        snapshot = TrackingSnapshot(
            state=self._state,
            pose=None if pose is None else pose.copy(),
            mask=mask,
            output_frame=output_frame,
            num_features=len(self.tracked_features),
            num_inliers=num_inliers,
            frame_id=self._snapshot.frame_id if frame is None else frame.frame_id,
            timestamp=self._snapshot.timestamp if frame is None else frame.timestamp,
            last_failure=failure,
            metadata=metadata or {}
        )
        with self._state_lock:
            self._snapshot = snapshot

    def _render_debug(self, frame: Frame, pose: Optional[Pose], metadata: Dict[str, Any]) -> np.ndarray:
        return draw_debug_overlay(
            frame.image, self._state, self.tracked_features,
            quad=metadata.get('quad'), pose=pose,
            camera_matrix=self.camera_matrix, axis_length=self.debug_axis_length
        )

    @property
    def _published(self) -> TrackingSnapshot:
        """处理线程读取自己上一次发布的快照"""
        with self._state_lock:
            return self._snapshot

    def get_snapshot(self) -> TrackingSnapshot:
        """获取最近一次发布的状态副本"""
        with self._state_lock:
            snapshot = self._snapshot
        return snapshot.copy()

    def get_state(self) -> TrackState:
        return self.get_snapshot().state

    def get_pose(self) -> Optional[Pose]:
        return self.get_snapshot().pose

    def can_calc_model_view_matrix(self) -> bool:
        """是否有可用位姿"""
        return self.get_snapshot().has_pose

    def get_model_view_matrix(self) -> np.ndarray:
        """渲染用4x4 model-view矩阵，无可用位姿时返回单位阵"""
        return self.get_snapshot().model_view_matrix()

    def get_mask(self) -> Optional[np.ndarray]:
        return self.get_snapshot().mask

    def get_output_frame(self) -> Optional[np.ndarray]:
        """调试画面，未开启调试时为None"""
        return self.get_snapshot().output_frame

    def get_last_failure(self) -> Optional[TrackingFailure]:
        return self.get_snapshot().last_failure

    def get_performance_stats(self) -> Dict[str, Any]:
        """获取性能统计信息"""
        stats = {}

        for key, times in self.tracking_stats.items():
            if times:
                stats[key] = {
                    'mean': float(np.mean(times)),
                    'std': float(np.std(times)),
                    'min': float(np.min(times)),
                    'max': float(np.max(times)),
                    'count': len(times)
                }

        stats['mailbox'] = dict(self._mailbox.stats)
        return stats

    def _gray(self, frame: Frame) -> np.ndarray:
        return ImageProcessor.to_gray(frame.image)
