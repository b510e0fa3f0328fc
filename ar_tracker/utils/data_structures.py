"""
数据结构定义
定义跟踪系统中使用的通用数据结构
"""

import cv2
import numpy as np
from enum import Enum
from dataclasses import dataclass, field, replace
from typing import Optional, Dict, Any

from ..solvers.geometry_utils import CV_TO_GL, pose_to_matrix


class TrackState(Enum):
    """跟踪器状态"""
    BOOTSTRAP = 'bootstrap'
    TRACKING = 'tracking'


class TrackingFailure(Enum):
    """跟踪失败分类 - 全部由状态机吸收，不向外抛出"""
    INSUFFICIENT_FEATURES = 'insufficient_features'
    DEGENERATE_GEOMETRY = 'degenerate_geometry'
    TRIANGULATION_FAILURE = 'triangulation_failure'
    CONFIGURATION_ERROR = 'configuration_error'


@dataclass
class Frame:
    """输入帧：图像 + 可选有效区域掩码"""
    image: np.ndarray
    mask: Optional[np.ndarray] = None
    frame_id: int = 0
    timestamp: float = 0.0
    metadata: Dict[str, Any] = field(default_factory=dict)     # 例如 homography_hint

    def copy(self) -> 'Frame':
        return Frame(
            image=self.image.copy(),
            mask=None if self.mask is None else self.mask.copy(),
            frame_id=self.frame_id,
            timestamp=self.timestamp,
            metadata=dict(self.metadata)
        )


@dataclass
class Pose:
    """相机位姿：marker/地图坐标系 -> 相机坐标系 (OpenCV视觉约定)"""
    R: np.ndarray                   # 旋转矩阵 [3, 3]
    t: np.ndarray                   # 平移向量 [3]

    @classmethod
    def identity(cls) -> 'Pose':
        return cls(R=np.eye(3), t=np.zeros(3))

    @classmethod
    def from_rvec_tvec(cls, rvec: np.ndarray, tvec: np.ndarray) -> 'Pose':
        R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))
        return cls(R=R, t=np.asarray(tvec, dtype=np.float64).reshape(3))

    def rvec(self) -> np.ndarray:
        """旋转向量 [3, 1]，供solvePnP作为初值"""
        rvec, _ = cv2.Rodrigues(np.asarray(self.R, dtype=np.float64))
        return rvec

    def tvec(self) -> np.ndarray:
        return np.asarray(self.t, dtype=np.float64).reshape(3, 1)

    def as_matrix(self) -> np.ndarray:
        """4x4齐次变换矩阵"""
        return pose_to_matrix(self.R, self.t)

    def model_view_matrix(self) -> np.ndarray:
        """渲染用model-view矩阵：Y、Z轴反号 (行主序)"""
        return CV_TO_GL @ self.as_matrix()

    def camera_center(self) -> np.ndarray:
        """相机光心在世界坐标系中的位置"""
        return -self.R.T @ np.asarray(self.t).reshape(3)

    def copy(self) -> 'Pose':
        return Pose(R=np.array(self.R, dtype=np.float64), t=np.array(self.t, dtype=np.float64).reshape(3))


@dataclass(frozen=True)
class Marker:
    """参考标记：图像、特征和边界四边形（marker像素坐标）"""
    image: np.ndarray
    keypoints: np.ndarray           # [N, 2]
    descriptors: Optional[np.ndarray]
    bounding_quad: np.ndarray       # [4, 2]
    size: float = 1.0               # 长边对应的世界尺寸

    @property
    def num_keypoints(self) -> int:
        return len(self.keypoints)

    def to_object_points(self, points: np.ndarray) -> np.ndarray:
        """marker像素坐标 -> 以marker中心为原点的平面3D坐标 (z=0)"""
        h, w = self.image.shape[:2]
        scale = self.size / float(max(w, h))
        points = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        object_points = np.zeros((len(points), 3), dtype=np.float64)
        object_points[:, 0] = (points[:, 0] - w / 2.0) * scale
        object_points[:, 1] = (points[:, 1] - h / 2.0) * scale
        return object_points


@dataclass
class TrackingResult:
    """单步处理结果"""
    success: bool
    state: TrackState
    tracking_method: str            # 'bootstrap' | 'tracking' | 'noop'
    num_features: int = 0
    num_inliers: int = 0
    reprojection_error: float = float('inf')
    processing_time: float = 0.0    # 处理时间(ms)
    failure: Optional[TrackingFailure] = None


@dataclass
class TrackingSnapshot:
    """对外发布的跟踪状态快照，整体替换，读取方拿到的是副本"""
    state: TrackState = TrackState.BOOTSTRAP
    pose: Optional[Pose] = None
    mask: Optional[np.ndarray] = None
    output_frame: Optional[np.ndarray] = None
    num_features: int = 0
    num_inliers: int = 0
    frame_id: int = -1
    timestamp: float = 0.0
    last_failure: Optional[TrackingFailure] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_pose(self) -> bool:
        return self.state is TrackState.TRACKING and self.pose is not None

    def model_view_matrix(self) -> np.ndarray:
        if not self.has_pose:
            return np.eye(4)
        return self.pose.model_view_matrix()

    def copy(self) -> 'TrackingSnapshot':
        return replace(
            self,
            pose=None if self.pose is None else self.pose.copy(),
            mask=None if self.mask is None else self.mask.copy(),
            output_frame=None if self.output_frame is None else self.output_frame.copy(),
            metadata=dict(self.metadata)
        )
