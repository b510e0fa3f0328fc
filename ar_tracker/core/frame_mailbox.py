"""
单槽帧邮箱
提交方覆盖最新帧，处理线程取走；不排队，只保留最新一帧
"""

import threading
from typing import Optional

from ..utils.data_structures import Frame


class FrameMailbox:
    """最新帧优先的单槽邮箱，条件变量唤醒消费者"""

    def __init__(self):
        self._condition = threading.Condition()
        self._frame: Optional[Frame] = None
        self._dirty = False
        self._woken = False

        # 统计信息
        self.stats = {
            'submitted': 0,
            'consumed': 0,
            'superseded': 0
        }

    def put(self, frame: Frame):
        """覆盖槽中的帧并唤醒消费者"""
        with self._condition:
            if self._dirty:
                self.stats['superseded'] += 1
            self._frame = frame
            self._dirty = True
            self.stats['submitted'] += 1
            self._condition.notify_all()

    def take(self, timeout: Optional[float] = None) -> Optional[Frame]:
        """
        取出最新帧

        Args:
            timeout: 0表示不等待，None表示一直等到有帧或被wake()唤醒

        Returns:
            帧，超时或被唤醒但无帧时返回None
        """
        with self._condition:
            if not self._dirty and timeout != 0:
                self._condition.wait_for(lambda: self._dirty or self._woken, timeout)
            self._woken = False

            if not self._dirty:
                return None

            frame = self._frame
            self._frame = None
            self._dirty = False
            self.stats['consumed'] += 1
            return frame

    def wake(self):
        """唤醒等待中的消费者（处理控制命令或停止）"""
        with self._condition:
            self._woken = True
            self._condition.notify_all()

    @property
    def has_frame(self) -> bool:
        with self._condition:
            return self._dirty
