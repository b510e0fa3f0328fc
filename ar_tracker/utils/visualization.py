"""
调试叠加绘制
跟踪特征点、marker边框和位姿坐标轴
"""

import cv2
import numpy as np
from typing import Optional

from .data_converter import ImageProcessor
from .data_structures import Pose, TrackState


def draw_tracked_features(canvas: np.ndarray, points: np.ndarray,
                          color=(0, 255, 0), radius: int = 3) -> np.ndarray:
    """绘制跟踪中的特征点"""
    for x, y in np.asarray(points).reshape(-1, 2):
        cv2.circle(canvas, (int(round(x)), int(round(y))), radius, color, 1, cv2.LINE_AA)
    return canvas


def draw_quad(canvas: np.ndarray, quad: np.ndarray, color=(255, 0, 0), thickness: int = 2) -> np.ndarray:
    """绘制marker在图像中的四边形"""
    pts = np.round(np.asarray(quad).reshape(-1, 1, 2)).astype(np.int32)
    cv2.polylines(canvas, [pts], True, color, thickness, cv2.LINE_AA)
    return canvas


def draw_pose_axes(canvas: np.ndarray, pose: Pose, camera_matrix: np.ndarray,
                   axis_length: float = 0.5, dist_coeffs: Optional[np.ndarray] = None) -> np.ndarray:
    """绘制位姿坐标轴 X红 Y绿 Z蓝"""
    if dist_coeffs is None:
        dist_coeffs = np.zeros((4, 1))

    axes = np.float64([[0, 0, 0], [axis_length, 0, 0], [0, axis_length, 0], [0, 0, axis_length]])
    projected, _ = cv2.projectPoints(axes, pose.rvec(), pose.tvec(), camera_matrix, dist_coeffs)
    projected = projected.reshape(-1, 2)
    if not np.all(np.isfinite(projected)):
        return canvas

    origin = tuple(int(v) for v in np.round(projected[0]))
    for end, color in zip(projected[1:], [(0, 0, 255), (0, 255, 0), (255, 0, 0)]):
        cv2.line(canvas, origin, tuple(int(v) for v in np.round(end)), color, 2, cv2.LINE_AA)
    return canvas


def draw_debug_overlay(image: np.ndarray, state: TrackState, points: np.ndarray,
                       quad: Optional[np.ndarray] = None, pose: Optional[Pose] = None,
                       camera_matrix: Optional[np.ndarray] = None,
                       axis_length: float = 0.5) -> np.ndarray:
    """组合调试画面"""
    canvas = ImageProcessor.to_bgr(image)
    draw_tracked_features(canvas, points)
    if quad is not None:
        draw_quad(canvas, quad)
    if pose is not None and camera_matrix is not None:
        draw_pose_axes(canvas, pose, camera_matrix, axis_length)

    label = f"{state.value} | {len(points)} features"
    cv2.putText(canvas, label, (10, 25), cv2.FONT_HERSHEY_SIMPLEX, 0.6, (0, 255, 255), 2, cv2.LINE_AA)
    return canvas
