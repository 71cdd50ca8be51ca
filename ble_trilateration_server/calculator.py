from __future__ import annotations

import math
from typing import Dict, List, Mapping, Optional

import numpy as np

from .config_manager import PipelineSettings
from .exceptions import ConfigError, NonFiniteValueError
from .models import Anchor, Point


# 分母绝对值小于该值视为锚点共线/重合
DEGENERATE_EPSILON = 1e-9


def rssi_to_distance(rssi: float, tx_power: float, path_loss_exponent: float) -> float:
    """
    对数距离路径损耗模型 (单位: 米)
    distance = 10 ^ ((tx_power - rssi) / (10 * n))
    """
    if not path_loss_exponent > 0:
        raise ConfigError(f"path_loss_exponent 必须 > 0: {path_loss_exponent}")
    exponent = (tx_power - rssi) / (10.0 * path_loss_exponent)
    try:
        distance = math.pow(10, exponent)
    except OverflowError as e:
        raise NonFiniteValueError(f"距离溢出: rssi={rssi}, exponent={exponent}") from e
    if not math.isfinite(distance):
        raise NonFiniteValueError(f"距离非有限值: rssi={rssi}, distance={distance}")
    return distance


def select_anchors(distances: Mapping[int, float], anchors: Mapping[int, Anchor]) -> List[int]:
    """按锚点编号升序选取前三个已知锚点，结果与字典插入顺序无关"""
    return sorted(a for a in distances if a in anchors)[:3]


def trilaterate(distances: Mapping[int, float], anchors: Mapping[int, Anchor]) -> Optional[Point]:
    """
    线性三边定位算法（二维）
    用锚点1的圆方程分别减去锚点2、3的圆方程，得到二元一次方程组，克莱姆法则求解：
      A*x + B*y = C
      D*x + E*y = F
    返回: Point，几何退化（共线/重合）或锚点不足时返回 None
    多于三个锚点时只使用编号最小的三个，不做最小二乘。
    """
    selected = select_anchors(distances, anchors)
    if len(selected) < 3:
        return None

    p = np.array([[anchors[a].x, anchors[a].y] for a in selected], dtype=float)
    r = np.array([distances[a] for a in selected], dtype=float)

    (x1, y1), (x2, y2), (x3, y3) = p
    r1, r2, r3 = r

    a = 2 * (x2 - x1)
    b = 2 * (y2 - y1)
    c = r1 * r1 - r2 * r2 + (x2 * x2 - x1 * x1) + (y2 * y2 - y1 * y1)
    d = 2 * (x3 - x1)
    e = 2 * (y3 - y1)
    f = r1 * r1 - r3 * r3 + (x3 * x3 - x1 * x1) + (y3 * y3 - y1 * y1)

    den = a * e - b * d
    if abs(den) <= DEGENERATE_EPSILON:
        return None
    x = (c * e - b * f) / den
    y = (a * f - c * d) / den
    if not np.isfinite([x, y]).all():
        raise NonFiniteValueError(f"定位结果非有限值: ({x}, {y})")
    return Point(x=float(x), y=float(y))


class LocationCalculator:
    """基于RSSI的蓝牙信标定位算法：路径损耗测距 + 三边定位"""

    def __init__(self, settings: PipelineSettings, anchors: Mapping[int, Anchor]):
        if not settings.path_loss_exponent > 0:
            raise ConfigError(f"path_loss_exponent 必须 > 0: {settings.path_loss_exponent}")
        # 1米处的RSSI值 (dBm)
        self.tx_power = settings.tx_power
        # 路径损耗指数
        self.path_loss_exponent = settings.path_loss_exponent
        self.anchors: Dict[int, Anchor] = dict(anchors)

    def rssi_to_distance(self, rssi: float) -> float:
        return rssi_to_distance(rssi, self.tx_power, self.path_loss_exponent)

    def trilaterate(self, distances: Mapping[int, float]) -> Optional[Point]:
        return trilaterate(distances, self.anchors)
