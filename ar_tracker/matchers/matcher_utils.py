"""
匹配器工具函数和数据结构
"""

from dataclasses import dataclass
from typing import List, Sequence

import cv2
import numpy as np


@dataclass
class MatchingResult:
    """特征匹配结果数据结构"""
    mkpts0: np.ndarray          # 查询图像关键点 [N, 2]
    mkpts1: np.ndarray          # 训练图像关键点 [N, 2]
    distances: np.ndarray       # 描述子距离 [N]
    num_matches: int            # 匹配点数量
    processing_time: float      # 处理时间(ms)

    @classmethod
    def empty(cls, processing_time: float = 0.0) -> 'MatchingResult':
        return cls(
            mkpts0=np.empty((0, 2), dtype=np.float32),
            mkpts1=np.empty((0, 2), dtype=np.float32),
            distances=np.empty(0, dtype=np.float32),
            num_matches=0,
            processing_time=processing_time
        )

    def filter_by_distance(self, max_distance: float) -> 'MatchingResult':
        """按描述子距离过滤匹配点"""
        valid_mask = self.distances <= max_distance
        return MatchingResult(
            mkpts0=self.mkpts0[valid_mask],
            mkpts1=self.mkpts1[valid_mask],
            distances=self.distances[valid_mask],
            num_matches=int(np.sum(valid_mask)),
            processing_time=self.processing_time
        )


def keypoints_to_array(keypoints: Sequence[cv2.KeyPoint]) -> np.ndarray:
    """cv2.KeyPoint列表转 [N, 2] float32"""
    if len(keypoints) == 0:
        return np.empty((0, 2), dtype=np.float32)
    return np.array([kp.pt for kp in keypoints], dtype=np.float32)


def ratio_test(knn_matches: Sequence[Sequence[cv2.DMatch]], ratio: float) -> List[cv2.DMatch]:
    """Lowe比率测试"""
    good_matches = []
    for pair in knn_matches:
        if len(pair) == 1:
            good_matches.append(pair[0])
        elif len(pair) >= 2 and pair[0].distance < ratio * pair[1].distance:
            good_matches.append(pair[0])
    return good_matches
