"""
数据格式转换工具
处理不同图像格式之间的转换
"""

import numpy as np
import cv2
from typing import Optional, Tuple


class ImageProcessor:
    """图像处理和格式转换"""

    @staticmethod
    def to_gray(image: np.ndarray) -> np.ndarray:
        """任意输入转为uint8灰度图"""
        if image.dtype != np.uint8:
            image = np.clip(image, 0, 255).astype(np.uint8)

        if image.ndim == 2:
            return image
        if image.ndim == 3 and image.shape[2] == 1:
            return image[:, :, 0]
        if image.ndim == 3 and image.shape[2] == 3:
            return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        if image.ndim == 3 and image.shape[2] == 4:
            return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
        raise ValueError(f"Unsupported image shape: {image.shape}")

    @staticmethod
    def to_bgr(image: np.ndarray) -> np.ndarray:
        """灰度图转BGR，用于调试叠加绘制"""
        if image.ndim == 2:
            return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
        if image.shape[2] == 4:
            return cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
        return image.copy()

    @staticmethod
    def normalize_mask(mask: Optional[np.ndarray], shape: Tuple[int, int]) -> Optional[np.ndarray]:
        """检测掩码统一为与图像同尺寸的uint8 (0/255)"""
        if mask is None:
            return None

        mask = np.asarray(mask)
        if mask.ndim == 3:
            mask = mask[:, :, 0]
        if mask.shape[:2] != tuple(shape[:2]):
            mask = cv2.resize(mask.astype(np.uint8), (shape[1], shape[0]), interpolation=cv2.INTER_NEAREST)
        return np.where(mask > 0, 255, 0).astype(np.uint8)
