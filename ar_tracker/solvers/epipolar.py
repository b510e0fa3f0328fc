"""
两视图几何
基础矩阵估计、本质矩阵分解、三角化与手性/重投影校验
"""

import logging
import cv2
import numpy as np
from dataclasses import dataclass
from typing import List, Optional, Tuple

logger = logging.getLogger('ARTracker.solvers')

_W = np.array([[0.0, -1.0, 0.0],
               [1.0, 0.0, 0.0],
               [0.0, 0.0, 1.0]])


@dataclass
class FundamentalResult:
    """基础矩阵估计结果"""
    F: np.ndarray                   # 3x3, pts_b^T F pts_a = 0
    inlier_mask: np.ndarray         # bool [N]
    num_inliers: int


@dataclass
class PoseHypothesis:
    """本质矩阵分解得到的候选位姿 (第二个相机相对第一个相机)"""
    tag: str                        # 'R1_t1' | 'R1_t2' | 'R2_t1' | 'R2_t2'
    R: np.ndarray
    t: np.ndarray                   # 单位长度 [3]

    def projection_matrix(self, camera_matrix: np.ndarray) -> np.ndarray:
        return camera_matrix @ np.hstack([self.R, self.t.reshape(3, 1)])


@dataclass
class TriangulationResult:
    """三角化结果"""
    points_3d: np.ndarray           # 第一个相机坐标系下 [N, 3]
    valid_mask: np.ndarray          # 通过手性与重投影检查的点 [N]
    valid: bool                     # 整体是否接受该假设
    reprojection_error: float       # 有效点平均重投影误差(px)
    parallax_deg: float             # 有效点视差角中位数

    @property
    def num_valid(self) -> int:
        return int(self.valid_mask.sum())


def estimate_fundamental(pts_a: np.ndarray, pts_b: np.ndarray,
                         threshold: float = 1.0,
                         confidence: float = 0.99,
                         min_inlier_ratio: float = 0.0) -> Optional[FundamentalResult]:
    """RANSAC估计基础矩阵，少于8对点、无解或内点不足时返回None"""
    pts_a = np.asarray(pts_a, dtype=np.float32).reshape(-1, 2)
    pts_b = np.asarray(pts_b, dtype=np.float32).reshape(-1, 2)

    if len(pts_a) < 8 or len(pts_a) != len(pts_b):
        logger.debug(f"Fundamental matrix needs >= 8 correspondences, got {len(pts_a)}")
        return None

    try:
        F, mask = cv2.findFundamentalMat(pts_a, pts_b, cv2.FM_RANSAC, threshold, confidence)
    except cv2.error as e:
        logger.warning(f"findFundamentalMat failed: {e}")
        return None

    if F is None or mask is None or F.shape[0] < 3:
        return None

    inlier_mask = mask.ravel().astype(bool)
    num_inliers = int(inlier_mask.sum())
    if num_inliers < 8 or num_inliers / len(inlier_mask) < min_inlier_ratio:
        logger.debug(f"Fundamental matrix rejected: {num_inliers}/{len(inlier_mask)} inliers")
        return None

    return FundamentalResult(F=F[:3, :3], inlier_mask=inlier_mask, num_inliers=num_inliers)


def essential_from_fundamental(F: np.ndarray, camera_matrix: np.ndarray) -> np.ndarray:
    """E = K^T F K"""
    K = np.asarray(camera_matrix, dtype=np.float64)
    return K.T @ np.asarray(F, dtype=np.float64) @ K


def decompose_essential(E: np.ndarray) -> List[PoseHypothesis]:
    """
    本质矩阵分解为四个候选位姿

    SVD后修正U、V的行列式符号，保证两个旋转均为真旋转(det=+1)。
    平移取左奇异向量最后一列，只确定到方向。
    """
    U, _, Vt = np.linalg.svd(np.asarray(E, dtype=np.float64))
    if np.linalg.det(U) < 0:
        U = -U
    if np.linalg.det(Vt) < 0:
        Vt = -Vt

    R1 = U @ _W @ Vt
    R2 = U @ _W.T @ Vt
    t1 = U[:, 2].copy()
    t2 = -t1

    return [
        PoseHypothesis('R1_t1', R1, t1),
        PoseHypothesis('R1_t2', R1, t2),
        PoseHypothesis('R2_t1', R2, t1),
        PoseHypothesis('R2_t2', R2, t2),
    ]


def _camera_from_projection(P: np.ndarray, camera_matrix: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    Rt = np.linalg.inv(camera_matrix) @ P
    return Rt[:, :3], Rt[:, 3]


def triangulate_and_validate(P0: np.ndarray, P1: np.ndarray,
                             pts0: np.ndarray, pts1: np.ndarray,
                             camera_matrix: np.ndarray,
                             max_reprojection_error: float = 4.0,
                             min_valid_ratio: float = 1.0,
                             min_parallax_deg: float = 0.0) -> TriangulationResult:
    """
    在候选相机对下三角化并校验

    单点有效条件：两相机中深度为正且两视图重投影误差均小于阈值。
    假设有效条件：有效点比例 >= min_valid_ratio 且视差角中位数 >= min_parallax_deg。
    min_valid_ratio=1.0 时任何一个点失败都会否决该假设。
    """
    K = np.asarray(camera_matrix, dtype=np.float64)
    P0 = np.asarray(P0, dtype=np.float64)
    P1 = np.asarray(P1, dtype=np.float64)
    pts0 = np.asarray(pts0, dtype=np.float64).reshape(-1, 2)
    pts1 = np.asarray(pts1, dtype=np.float64).reshape(-1, 2)
    n = len(pts0)

    if n == 0:
        return TriangulationResult(np.empty((0, 3)), np.zeros(0, dtype=bool), False, float('inf'), 0.0)

    points_4d = cv2.triangulatePoints(P0, P1, np.ascontiguousarray(pts0.T), np.ascontiguousarray(pts1.T))
    with np.errstate(divide='ignore', invalid='ignore'):
        points_3d = (points_4d[:3] / points_4d[3]).T
    finite = np.all(np.isfinite(points_3d), axis=1)
    points_3d[~finite] = 0.0

    homogeneous = np.hstack([points_3d, np.ones((n, 1))])
    valid_mask = finite.copy()
    errors = np.zeros(n)
    centers = []
    for P, pts in ((P0, pts0), (P1, pts1)):
        R, t = _camera_from_projection(P, K)
        depth = (homogeneous @ np.hstack([R, t.reshape(3, 1)]).T)[:, 2]
        projected = homogeneous @ P.T
        with np.errstate(divide='ignore', invalid='ignore'):
            reprojected = projected[:, :2] / projected[:, 2:3]
            err = np.linalg.norm(reprojected - pts, axis=1)
        err[~np.isfinite(err)] = np.inf
        errors = np.maximum(errors, err)
        valid_mask &= (depth > 0) & (err < max_reprojection_error)
        centers.append(-R.T @ t)

    num_valid = int(valid_mask.sum())
    if num_valid == 0:
        return TriangulationResult(points_3d, valid_mask, False, float('inf'), 0.0)

    # 视差角：两相机光心到三维点的射线夹角
    rays0 = points_3d[valid_mask] - centers[0]
    rays1 = points_3d[valid_mask] - centers[1]
    cos_parallax = np.sum(rays0 * rays1, axis=1) / (
        np.linalg.norm(rays0, axis=1) * np.linalg.norm(rays1, axis=1) + 1e-12)
    parallax_deg = float(np.median(np.degrees(np.arccos(np.clip(cos_parallax, -1.0, 1.0)))))

    valid_ratio = num_valid / n
    reprojection_error = float(np.mean(errors[valid_mask]))
    valid = valid_ratio >= min_valid_ratio and parallax_deg >= min_parallax_deg

    logger.debug(f"Triangulation: {num_valid}/{n} valid, reprojection {reprojection_error:.2f}px, "
                 f"parallax {parallax_deg:.2f}deg -> {'accept' if valid else 'reject'}")

    return TriangulationResult(points_3d, valid_mask, valid, reprojection_error, parallax_deg)


def select_pose_hypothesis(hypotheses: List[PoseHypothesis],
                           pts0: np.ndarray, pts1: np.ndarray,
                           camera_matrix: np.ndarray,
                           **validation_kwargs) -> Optional[Tuple[PoseHypothesis, TriangulationResult]]:
    """
    枚举四个候选位姿并逐一三角化校验

    只有恰好一个假设通过校验时才返回，否则返回None。
    """
    K = np.asarray(camera_matrix, dtype=np.float64)
    P0 = K @ np.hstack([np.eye(3), np.zeros((3, 1))])

    accepted = []
    for hypothesis in hypotheses:
        triangulation = triangulate_and_validate(
            P0, hypothesis.projection_matrix(K), pts0, pts1, K, **validation_kwargs
        )
        if triangulation.valid:
            accepted.append((hypothesis, triangulation))

    if len(accepted) != 1:
        logger.debug(f"{len(accepted)} pose hypotheses validated, expected exactly one")
        return None

    return accepted[0]
