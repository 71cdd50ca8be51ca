from __future__ import annotations

from collections import deque
from typing import List

import numpy as np

from .models import Point


class PositionGuard:
    """
    位置异常值剔除：新位置与最近 history_length 个已接受位置的均值
    距离超过 threshold（米）则拒绝。历史未满时无条件接受。
    """

    def __init__(self, history_length: int, threshold: float):
        if history_length <= 0:
            raise ValueError(f"history_length must be > 0, got {history_length}")
        if threshold <= 0:
            raise ValueError(f"threshold must be > 0, got {threshold}")
        self.history_length = history_length
        self.threshold = threshold
        self.history: deque[Point] = deque(maxlen=history_length)

    @property
    def is_warm(self) -> bool:
        return len(self.history) >= self.history_length

    def mean(self) -> Point:
        pts = np.array([(p.x, p.y) for p in self.history], dtype=float)
        mx, my = pts.mean(axis=0)
        return Point(x=float(mx), y=float(my))

    def check_and_update(self, point: Point) -> bool:
        if self.is_warm:
            center = self.mean()
            dist = float(np.hypot(point.x - center.x, point.y - center.y))
            if dist > self.threshold:
                return False
            self.history.popleft()
        self.history.append(point)
        return True

    def snapshot(self) -> List[Point]:
        return list(self.history)
