"""
PnP求解器
基于OpenCV的PnP位姿估计，支持上一帧位姿作为初值
"""

import time
import logging
from dataclasses import dataclass
from typing import Dict, Any, Optional

import cv2
import numpy as np

from ..utils.data_structures import Pose

logger = logging.getLogger('ARTracker.solvers')


@dataclass
class PnPResult:
    """PnP求解结果数据结构"""
    success: bool                   # 求解是否成功
    R: np.ndarray                   # 旋转矩阵 [3, 3]
    T: np.ndarray                   # 平移向量 [3]
    inliers: np.ndarray             # 内点索引
    num_inliers: int                # 内点数量
    reprojection_error: float       # 重投影误差
    processing_time: float          # 处理时间(ms)

    def is_reliable(self, min_inliers: int = 20) -> bool:
        """判断求解结果是否可靠"""
        return self.success and self.num_inliers >= min_inliers

    @property
    def pose(self) -> Optional[Pose]:
        if not self.success:
            return None
        return Pose(R=self.R.copy(), t=self.T.copy())

    @classmethod
    def failure(cls, processing_time: float = 0.0) -> 'PnPResult':
        return cls(
            success=False, R=np.eye(3), T=np.zeros(3),
            inliers=np.array([], dtype=int), num_inliers=0,
            reprojection_error=float('inf'), processing_time=processing_time
        )


def as_object_points(points: np.ndarray) -> np.ndarray:
    """平面2D对应点抬升为z=0的3D点"""
    points = np.asarray(points, dtype=np.float64)
    if points.ndim == 2 and points.shape[1] == 2:
        return np.hstack([points, np.zeros((len(points), 1))])
    return points.reshape(-1, 3)


class PnPSolver:
    """OpenCV PnP求解器"""

    METHODS = {
        'SOLVEPNP_ITERATIVE': cv2.SOLVEPNP_ITERATIVE,
        'SOLVEPNP_EPNP': cv2.SOLVEPNP_EPNP,
        'SOLVEPNP_IPPE': cv2.SOLVEPNP_IPPE,
        'SOLVEPNP_SQPNP': cv2.SOLVEPNP_SQPNP,
    }

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.ransac_threshold = config.get('pnp_ransac_threshold', 4.0)
        self.min_inliers = config.get('pnp_min_inliers', 6)
        self.max_iterations = config.get('pnp_max_iterations', 200)
        self.confidence = config.get('pnp_confidence', 0.99)

        # 无初值时的求解方法
        self.pnp_method = config.get('pnp_method', 'SOLVEPNP_ITERATIVE')

    def solve(self, object_points: np.ndarray, image_points: np.ndarray,
              camera_matrix: np.ndarray,
              dist_coeffs: Optional[np.ndarray] = None,
              prior_pose: Optional[Pose] = None,
              use_ransac: bool = False) -> PnPResult:
        """
        由3D(或平面2D)-2D对应关系求解位姿

        Args:
            object_points: [N, 3] 或平面点 [N, 2]
            image_points: [N, 2]
            prior_pose: 上一帧位姿，存在时作为迭代优化初值
            use_ransac: 是否使用RANSAC剔除外点
        """
        start_time = time.time()

        object_points = as_object_points(object_points)
        image_points = np.asarray(image_points, dtype=np.float64).reshape(-1, 2)
        camera_matrix = np.asarray(camera_matrix, dtype=np.float64)
        if dist_coeffs is None:
            dist_coeffs = np.zeros((4, 1))

        planar = np.allclose(object_points[:, 2], 0.0)
        min_points = 4 if (planar or prior_pose is not None) else 6
        if len(object_points) < min_points or len(object_points) != len(image_points):
            return PnPResult.failure((time.time() - start_time) * 1000)

        try:
            if use_ransac:
                result = self._solve_pnp_ransac(object_points, image_points,
                                                camera_matrix, dist_coeffs, prior_pose)
            else:
                result = self._solve_pnp_iterative(object_points, image_points,
                                                   camera_matrix, dist_coeffs, prior_pose)
        except cv2.error as e:
            logger.warning(f"PnP solving failed: {e}")
            result = PnPResult.failure()

        if result.success and not self._in_front_of_camera(object_points[result.inliers], result):
            logger.debug("PnP solution rejected: object behind camera")
            result = PnPResult.failure()

        result.processing_time = (time.time() - start_time) * 1000
        return result

    def _solve_pnp_iterative(self, points_3d: np.ndarray, points_2d: np.ndarray,
                             camera_matrix: np.ndarray, dist_coeffs: np.ndarray,
                             prior_pose: Optional[Pose]) -> PnPResult:
        """全部点参与的迭代求解"""
        if prior_pose is not None:
            success, rvec, tvec = cv2.solvePnP(
                points_3d, points_2d, camera_matrix, dist_coeffs,
                rvec=prior_pose.rvec(), tvec=prior_pose.tvec(),
                useExtrinsicGuess=True, flags=cv2.SOLVEPNP_ITERATIVE
            )
        else:
            method = self.METHODS.get(self.pnp_method, cv2.SOLVEPNP_ITERATIVE)
            success, rvec, tvec = cv2.solvePnP(
                points_3d, points_2d, camera_matrix, dist_coeffs, flags=method
            )

        if not success:
            return PnPResult.failure()

        R_mat, _ = cv2.Rodrigues(rvec)
        inliers = np.arange(len(points_3d))
        reprojection_error = self._compute_reprojection_error(
            points_3d, points_2d, R_mat, tvec.flatten(), camera_matrix, dist_coeffs
        )
        return PnPResult(
            success=True,
            R=R_mat,
            T=tvec.flatten(),
            inliers=inliers,
            num_inliers=len(inliers),
            reprojection_error=reprojection_error,
            processing_time=0.0
        )

    def _solve_pnp_ransac(self, points_3d: np.ndarray, points_2d: np.ndarray,
                          camera_matrix: np.ndarray, dist_coeffs: np.ndarray,
                          prior_pose: Optional[Pose]) -> PnPResult:
        """使用RANSAC求解PnP问题"""
        use_guess = prior_pose is not None
        success, rvec, tvec, inliers = cv2.solvePnPRansac(
            points_3d,
            points_2d,
            camera_matrix,
            dist_coeffs,
            rvec=prior_pose.rvec() if use_guess else None,
            tvec=prior_pose.tvec() if use_guess else None,
            useExtrinsicGuess=use_guess,
            iterationsCount=self.max_iterations,
            reprojectionError=self.ransac_threshold,
            confidence=self.confidence,
            flags=cv2.SOLVEPNP_ITERATIVE
        )

        if not success or inliers is None or len(inliers) < 4:
            return PnPResult.failure()

        # 转换旋转向量到旋转矩阵
        R_mat, _ = cv2.Rodrigues(rvec)
        inliers = inliers.flatten()
        reprojection_error = self._compute_reprojection_error(
            points_3d[inliers], points_2d[inliers],
            R_mat, tvec.flatten(), camera_matrix, dist_coeffs
        )

        ransac_result = PnPResult(
            success=True,
            R=R_mat,
            T=tvec.flatten(),
            inliers=inliers,
            num_inliers=len(inliers),
            reprojection_error=reprojection_error,
            processing_time=0.0
        )
        return self._refine_pose_with_initial_guess(points_3d, points_2d, camera_matrix,
                                                    dist_coeffs, ransac_result)

    def _compute_reprojection_error(self, points_3d: np.ndarray, points_2d: np.ndarray,
                                    R: np.ndarray, t: np.ndarray,
                                    camera_matrix: np.ndarray,
                                    dist_coeffs: np.ndarray) -> float:
        """计算平均重投影误差"""
        if len(points_3d) == 0:
            return float('inf')

        rvec, _ = cv2.Rodrigues(R)
        projected_pts, _ = cv2.projectPoints(
            np.asarray(points_3d, dtype=np.float64),
            rvec,
            np.asarray(t, dtype=np.float64).reshape(3, 1),
            camera_matrix,
            dist_coeffs
        )

        projected_pts = projected_pts.reshape(-1, 2)
        errors = np.linalg.norm(points_2d - projected_pts, axis=1)
        return float(np.mean(errors))

    def _refine_pose_with_initial_guess(self, points_3d: np.ndarray, points_2d: np.ndarray,
                                        camera_matrix: np.ndarray, dist_coeffs: np.ndarray,
                                        ransac_result: PnPResult) -> PnPResult:
        """以RANSAC结果为初值在内点上做非线性优化"""
        if ransac_result.num_inliers < 6:
            return ransac_result

        inlier_3d = points_3d[ransac_result.inliers]
        inlier_2d = points_2d[ransac_result.inliers]
        rvec_init, _ = cv2.Rodrigues(ransac_result.R)

        success, rvec_refined, tvec_refined = cv2.solvePnP(
            inlier_3d, inlier_2d, camera_matrix, dist_coeffs,
            rvec=rvec_init,
            tvec=ransac_result.T.reshape(3, 1).copy(),
            useExtrinsicGuess=True,
            flags=cv2.SOLVEPNP_ITERATIVE
        )

        if success:
            R_refined, _ = cv2.Rodrigues(rvec_refined)
            refined_error = self._compute_reprojection_error(
                inlier_3d, inlier_2d, R_refined, tvec_refined.flatten(),
                camera_matrix, dist_coeffs
            )

            # 如果优化后的结果更好，使用优化结果
            if refined_error < ransac_result.reprojection_error:
                return PnPResult(
                    success=True,
                    R=R_refined,
                    T=tvec_refined.flatten(),
                    inliers=ransac_result.inliers,
                    num_inliers=ransac_result.num_inliers,
                    reprojection_error=refined_error,
                    processing_time=ransac_result.processing_time
                )

        return ransac_result

    @staticmethod
    def _in_front_of_camera(points_3d: np.ndarray, result: PnPResult) -> bool:
        depths = points_3d @ result.R[2] + result.T[2]
        return len(depths) > 0 and float(np.median(depths)) > 0


def solve_pose_from_correspondences(object_points: np.ndarray, image_points: np.ndarray,
                                    camera_matrix: np.ndarray,
                                    prior_pose: Optional[Pose] = None,
                                    dist_coeffs: Optional[np.ndarray] = None,
                                    use_ransac: bool = False,
                                    config: Optional[Dict[str, Any]] = None) -> Optional[Pose]:
    """便捷接口：求解失败返回None"""
    result = PnPSolver(config or {}).solve(
        object_points, image_points, camera_matrix,
        dist_coeffs=dist_coeffs, prior_pose=prior_pose, use_ransac=use_ransac
    )
    return result.pose
