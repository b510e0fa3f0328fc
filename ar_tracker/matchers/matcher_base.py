"""
特征管线基类
定义检测、描述、匹配三项能力的通用接口
"""

import time
from abc import ABC, abstractmethod
from typing import Dict, Any, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from .matcher_utils import MatchingResult


class FeaturePipeline(ABC):
    """特征管线基类，跟踪器只依赖这个接口"""

    def __init__(self, config: Dict[str, Any]):
        self.config = config

    @abstractmethod
    def detect(self, image: np.ndarray, mask: Optional[np.ndarray] = None) -> List[cv2.KeyPoint]:
        """
        检测关键点

        Args:
            image: 灰度图像
            mask: 可选检测区域掩码

        Returns:
            关键点列表
        """
        pass

    @abstractmethod
    def describe(self, image: np.ndarray,
                 keypoints: Sequence[cv2.KeyPoint]) -> Tuple[List[cv2.KeyPoint], Optional[np.ndarray]]:
        """计算描述子，返回保留下来的关键点与描述子"""
        pass

    @abstractmethod
    def match(self, query_descriptors: np.ndarray, train_descriptors: np.ndarray) -> List[cv2.DMatch]:
        """描述子匹配，queryIdx指向query，trainIdx指向train"""
        pass

    def detect_and_describe(self, image: np.ndarray,
                            mask: Optional[np.ndarray] = None) -> Tuple[List[cv2.KeyPoint], Optional[np.ndarray]]:
        return self.describe(image, self.detect(image, mask))

    def match_keypoints(self, query_keypoints: Sequence[cv2.KeyPoint], query_descriptors: Optional[np.ndarray],
                        train_points: np.ndarray, train_descriptors: Optional[np.ndarray]) -> MatchingResult:
        """匹配并返回对应点坐标"""
        start_time = time.time()

        if (query_descriptors is None or train_descriptors is None
                or len(query_descriptors) == 0 or len(train_descriptors) == 0):
            return MatchingResult.empty((time.time() - start_time) * 1000)

        matches = self.match(query_descriptors, train_descriptors)
        if not matches:
            return MatchingResult.empty((time.time() - start_time) * 1000)

        train_points = np.asarray(train_points, dtype=np.float32).reshape(-1, 2)
        return MatchingResult(
            mkpts0=np.array([query_keypoints[m.queryIdx].pt for m in matches], dtype=np.float32),
            mkpts1=train_points[[m.trainIdx for m in matches]],
            distances=np.array([m.distance for m in matches], dtype=np.float32),
            num_matches=len(matches),
            processing_time=(time.time() - start_time) * 1000
        )

    def is_match_reliable(self, matches: MatchingResult, min_matches: int = 10) -> bool:
        """判断匹配结果是否可靠"""
        return matches is not None and matches.num_matches >= min_matches
