"""
几何工具函数
包含3D几何计算相关的工具函数
"""

import cv2
import numpy as np
from typing import Tuple

# 视觉坐标系 -> 渲染坐标系：Y、Z轴反号
CV_TO_GL = np.diag([1.0, -1.0, -1.0, 1.0])


def pose_to_matrix(R: np.ndarray, T: np.ndarray) -> np.ndarray:
    """旋转+平移组合为4x4齐次矩阵"""
    matrix = np.eye(4)
    matrix[:3, :3] = np.asarray(R, dtype=np.float64)
    matrix[:3, 3] = np.asarray(T, dtype=np.float64).reshape(3)
    return matrix


def transform_points(points: np.ndarray, R: np.ndarray, T: np.ndarray) -> np.ndarray:
    """
    使用旋转和平移变换3D点

    Args:
        points: 输入3D点 [N, 3]
        R: 旋转矩阵 [3, 3]
        T: 平移向量 [3]

    Returns:
        transformed_points: 变换后的3D点 [N, 3]
    """
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    return points @ np.asarray(R, dtype=np.float64).T + np.asarray(T, dtype=np.float64).reshape(1, 3)


def project_points(points_3d: np.ndarray, intrinsics: np.ndarray) -> np.ndarray:
    """
    将相机坐标系下的3D点投影到图像平面

    Args:
        points_3d: 3D点 [N, 3]
        intrinsics: 相机内参 [3, 3]

    Returns:
        points_2d: 投影的2D点 [N, 2]
    """
    points_3d = np.asarray(points_3d, dtype=np.float64).reshape(-1, 3)
    projected = points_3d @ np.asarray(intrinsics, dtype=np.float64).T
    return projected[:, :2] / projected[:, 2:3]


def compute_reprojection_error(points_3d: np.ndarray, points_2d: np.ndarray,
                               R: np.ndarray, T: np.ndarray, intrinsics: np.ndarray) -> np.ndarray:
    """计算逐点重投影误差 [N]"""
    cam_points = transform_points(points_3d, R, T)
    projected = project_points(cam_points, intrinsics)
    return np.linalg.norm(projected - np.asarray(points_2d, dtype=np.float64).reshape(-1, 2), axis=1)


def perspective_transform(points: np.ndarray, H: np.ndarray) -> np.ndarray:
    """用单应矩阵变换2D点 [N, 2]"""
    points = np.asarray(points, dtype=np.float64).reshape(-1, 1, 2)
    if len(points) == 0:
        return np.empty((0, 2))
    return cv2.perspectiveTransform(points, np.asarray(H, dtype=np.float64)).reshape(-1, 2)


def projection_matrix_from_intrinsics(camera_matrix: np.ndarray, width: int, height: int,
                                      near: float = 0.01, far: float = 100.0) -> np.ndarray:
    """
    由相机内参构建OpenGL透视投影矩阵 (行主序)

    与model-view矩阵配合使用：相机看向 -Z，Y轴向上。
    """
    fx, fy = camera_matrix[0, 0], camera_matrix[1, 1]
    cx, cy = camera_matrix[0, 2], camera_matrix[1, 2]

    projection = np.zeros((4, 4))
    projection[0, 0] = 2.0 * fx / width
    projection[0, 2] = 1.0 - 2.0 * cx / width
    projection[1, 1] = 2.0 * fy / height
    projection[1, 2] = 2.0 * cy / height - 1.0
    projection[2, 2] = -(far + near) / (far - near)
    projection[2, 3] = -2.0 * far * near / (far - near)
    projection[3, 2] = -1.0
    return projection


def plane_alignment_transform(points_3d: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    计算把点云主平面对齐到z=0的刚体变换

    原点移到质心，z轴取最小主成分方向（法向），保持右手系。

    Returns:
        R, T: 满足 p_plane = R @ p + T
    """
    points_3d = np.asarray(points_3d, dtype=np.float64).reshape(-1, 3)
    centroid = points_3d.mean(axis=0)
    _, _, vt = np.linalg.svd(points_3d - centroid)

    x_axis, normal = vt[0], vt[2]
    # 法向朝向相机一侧之外（原相机光心位于 z<0）
    if np.dot(normal, -centroid) > 0:
        normal = -normal
    y_axis = np.cross(normal, x_axis)
    x_axis = np.cross(y_axis, normal)

    R = np.vstack([x_axis / np.linalg.norm(x_axis),
                   y_axis / np.linalg.norm(y_axis),
                   normal / np.linalg.norm(normal)])
    T = -R @ centroid
    return R, T
