"""
特征跟踪器
金字塔LK光流 + 前后向一致性校验
"""

from dataclasses import dataclass
from typing import Dict, Any

import cv2
import numpy as np


@dataclass
class FlowResult:
    """光流跟踪结果"""
    points: np.ndarray          # 当前帧中的位置 [N, 2]
    status: np.ndarray          # 通过校验的点 bool [N]
    fb_error: np.ndarray        # 前后向误差(px) [N]

    @property
    def num_tracked(self) -> int:
        return int(self.status.sum())


class FeatureTracker:
    """光流跟踪器，两种跟踪器共用"""

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.win_size = tuple(config.get('win_size', (21, 21)))
        self.max_level = config.get('max_level', 3)
        self.fb_threshold = config.get('fb_threshold', 1.0)
        self.min_eig_threshold = config.get('min_eig_threshold', 1e-4)
        self.criteria = (
            cv2.TERM_CRITERIA_EPS | cv2.TERM_CRITERIA_COUNT,
            config.get('max_iterations', 30),
            config.get('epsilon', 0.01)
        )

    @property
    def lk_params(self) -> Dict[str, Any]:
        return dict(
            winSize=self.win_size,
            maxLevel=self.max_level,
            criteria=self.criteria,
            minEigThreshold=self.min_eig_threshold
        )

    def track(self, prev_gray: np.ndarray, gray: np.ndarray, points: np.ndarray) -> FlowResult:
        """
        正向跟踪 prev -> cur，再反向跟踪 cur -> prev

        正反向都成功、往返误差小于阈值且落在图像内的点才算有效。
        """
        points = np.asarray(points, dtype=np.float32).reshape(-1, 2)
        n = len(points)
        if n == 0 or prev_gray is None or prev_gray.shape != gray.shape:
            return FlowResult(points.copy(), np.zeros(n, dtype=bool), np.full(n, np.inf))

        p0 = points.reshape(-1, 1, 2)
        p1, status_fwd, _ = cv2.calcOpticalFlowPyrLK(prev_gray, gray, p0, None, **self.lk_params)
        if p1 is None:
            return FlowResult(points.copy(), np.zeros(n, dtype=bool), np.full(n, np.inf))

        p0r, status_bwd, _ = cv2.calcOpticalFlowPyrLK(gray, prev_gray, p1, None, **self.lk_params)
        if p0r is None:
            return FlowResult(p1.reshape(-1, 2), np.zeros(n, dtype=bool), np.full(n, np.inf))

        tracked = p1.reshape(-1, 2)
        fb_error = np.linalg.norm(p0r.reshape(-1, 2) - points, axis=1)

        h, w = gray.shape[:2]
        inside = ((tracked[:, 0] >= 0) & (tracked[:, 0] < w) &
                  (tracked[:, 1] >= 0) & (tracked[:, 1] < h))
        status = (
            (status_fwd.ravel() == 1) &
            (status_bwd.ravel() == 1) &
            (fb_error < self.fb_threshold) &
            inside
        )
        return FlowResult(tracked, status, fb_error)

    def is_tracking_reliable(self, result: FlowResult, min_features: int) -> bool:
        """判断光流跟踪是否可靠"""
        return result.num_tracked >= min_features
