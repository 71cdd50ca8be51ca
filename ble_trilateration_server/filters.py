from __future__ import annotations

import math
from collections import deque
from dataclasses import dataclass
from typing import Any, List, Sequence, Tuple

from .config_manager import PipelineSettings
from .exceptions import NonFiniteValueError


class IdentityStage:
    """关闭的滤波阶段：原样输出"""

    name = "identity"

    def step(self, value: float) -> Tuple[float, Any]:
        return value, None

    def commit(self, state: Any) -> None:
        pass

    def update(self, value: float) -> float:
        return value


class MovingAverageFilter:
    """滑动平均滤波，保留最近 window_size 个原始样本"""

    name = "moving_average"

    def __init__(self, window_size: int):
        if window_size <= 0:
            raise ValueError(f"window_size must be > 0, got {window_size}")
        self.window_size = window_size
        self.window: deque[float] = deque(maxlen=window_size)

    def step(self, value: float) -> Tuple[float, Tuple[float, ...]]:
        """计算加入新样本后的均值与候选窗口，不修改自身状态"""
        samples = (*self.window, value)[-self.window_size:]
        return sum(samples) / len(samples), samples

    def commit(self, state: Tuple[float, ...]) -> None:
        self.window = deque(state, maxlen=self.window_size)

    def update(self, value: float) -> float:
        out, state = self.step(value)
        self.commit(state)
        return out


class KalmanFilter1D:
    """
    一维卡尔曼滤波（静态模型，无控制输入）
    先预测再校正：P' = P + Q, K = P'/(P' + R), x = x + K(z - x), P = (1 - K)P'
    """

    name = "kalman"

    def __init__(self, r: float, q: float):
        if r <= 0 or q <= 0:
            raise ValueError(f"kalman noise must be > 0, got r={r}, q={q}")
        self.r = r  # 测量噪声
        self.q = q  # 过程噪声
        self.x = 0.0
        self.p = 1.0
        self.gain = 0.0

    def step(self, z: float) -> Tuple[float, Tuple[float, float, float]]:
        x_prior = self.x
        p_prior = self.p + self.q
        k = p_prior / (p_prior + self.r)
        x = x_prior + k * (z - x_prior)
        p = (1 - k) * p_prior
        return x, (x, p, k)

    def commit(self, state: Tuple[float, float, float]) -> None:
        self.x, self.p, self.gain = state

    def update(self, z: float) -> float:
        out, state = self.step(z)
        self.commit(state)
        return out


@dataclass(frozen=True)
class FilterPass:
    """一次滤波计算的结果，commit 之前不会写入任何状态"""

    raw: float
    value: float
    stage_values: Tuple[float, ...]
    states: Tuple[Any, ...]


class FilterChain:
    """按固定顺序串联的滤波阶段：滑动平均 -> 卡尔曼"""

    def __init__(self, stages: Sequence):
        self.stages: List = list(stages)

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "FilterChain":
        return cls(
            [
                MovingAverageFilter(settings.window_size) if settings.use_moving_average else IdentityStage(),
                KalmanFilter1D(settings.kalman_r, settings.kalman_q) if settings.use_kalman else IdentityStage(),
            ]
        )

    def preview(self, sample: float) -> FilterPass:
        value = float(sample)
        values: List[float] = []
        states: List[Any] = []
        for stage in self.stages:
            value, state = stage.step(value)
            if not math.isfinite(value):
                raise NonFiniteValueError(f"{stage.name} 滤波输出非有限值: {value}")
            values.append(value)
            states.append(state)
        return FilterPass(raw=float(sample), value=value, stage_values=tuple(values), states=tuple(states))

    def commit(self, filter_pass: FilterPass) -> None:
        for stage, state in zip(self.stages, filter_pass.states):
            stage.commit(state)

    def update(self, sample: float) -> float:
        filter_pass = self.preview(sample)
        self.commit(filter_pass)
        return filter_pass.value
