"""
单应矩阵估计
RANSAC鲁棒估计平面投影变换
"""

import logging
import cv2
import numpy as np
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger('ARTracker.solvers')


@dataclass
class HomographyResult:
    """单应估计结果"""
    H: np.ndarray                   # 3x3投影变换 (pts_a -> pts_b)
    inlier_mask: np.ndarray         # bool [N]
    num_inliers: int

    @property
    def inlier_ratio(self) -> float:
        return self.num_inliers / max(len(self.inlier_mask), 1)


def estimate_homography(pts_a: np.ndarray, pts_b: np.ndarray,
                        reproj_threshold: float = 3.0,
                        min_inlier_ratio: float = 0.0,
                        max_iterations: int = 2000,
                        confidence: float = 0.995) -> Optional[HomographyResult]:
    """
    RANSAC估计 pts_a -> pts_b 的单应矩阵

    少于4对点、无解或内点比例低于阈值时返回None。
    """
    pts_a = np.asarray(pts_a, dtype=np.float32).reshape(-1, 2)
    pts_b = np.asarray(pts_b, dtype=np.float32).reshape(-1, 2)

    if len(pts_a) < 4 or len(pts_a) != len(pts_b):
        logger.debug(f"Homography needs >= 4 correspondences, got {len(pts_a)}")
        return None

    try:
        H, mask = cv2.findHomography(
            pts_a, pts_b, cv2.RANSAC, reproj_threshold,
            maxIters=max_iterations, confidence=confidence
        )
    except cv2.error as e:
        logger.warning(f"findHomography failed: {e}")
        return None

    if H is None or mask is None:
        return None

    inlier_mask = mask.ravel().astype(bool)
    result = HomographyResult(H=H, inlier_mask=inlier_mask, num_inliers=int(inlier_mask.sum()))

    if result.num_inliers < 4 or result.inlier_ratio < min_inlier_ratio:
        logger.debug(f"Homography rejected: {result.num_inliers}/{len(inlier_mask)} inliers")
        return None

    return result
