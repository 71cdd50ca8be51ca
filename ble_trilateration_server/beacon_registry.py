from __future__ import annotations

import logging
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .calculator import LocationCalculator
from .config_manager import PipelineSettings
from .filters import FilterChain
from .outlier import PositionGuard


logger = logging.getLogger(__name__)

ChainKey = Tuple[str, int]


@dataclass
class BeaconState:
    """单个信标的运行状态：各锚点最新距离 + 位置异常值过滤"""

    beacon_id: str
    guard: PositionGuard
    distances: Dict[int, float] = field(default_factory=dict)


class BeaconRegistry:
    """
    信标状态表
    - 信标状态按 beacon_id 精确匹配（区分大小写），首次出现时创建
    - 滤波链单独一张表，键为 (beacon_id, anchor_id)
    - deny_list 中的信标直接忽略
    - max_beacons > 0 时按最久未出现淘汰整个信标（含其滤波链），0 表示不限
    """

    def __init__(self, settings: PipelineSettings, deny_list: Optional[Iterable[str]] = None):
        self.settings = settings
        self.deny_list = frozenset(settings.deny_list if deny_list is None else deny_list)
        self.max_beacons = settings.max_beacons
        self._beacons: "OrderedDict[str, BeaconState]" = OrderedDict()
        self._chains: Dict[ChainKey, FilterChain] = {}
        self._evict_listeners: List[Callable[[str], None]] = []

    def add_evict_listener(self, fn: Callable[[str], None]) -> None:
        self._evict_listeners.append(fn)

    def __len__(self) -> int:
        return len(self._beacons)

    def __contains__(self, beacon_id: str) -> bool:
        return beacon_id in self._beacons

    def is_denied(self, beacon_id: str) -> bool:
        return beacon_id in self.deny_list

    def get(self, beacon_id: str) -> Optional[BeaconState]:
        return self._beacons.get(beacon_id)

    def get_or_create(self, beacon_id: str) -> BeaconState:
        state = self._beacons.get(beacon_id)
        if state is not None:
            self._beacons.move_to_end(beacon_id)
            return state
        state = BeaconState(
            beacon_id=beacon_id,
            guard=PositionGuard(self.settings.history_length, self.settings.outlier_threshold),
        )
        self._beacons[beacon_id] = state
        logger.debug("新信标: %s", beacon_id)
        self._evict()
        return state

    def chain_for(self, beacon_id: str, anchor_id: int) -> FilterChain:
        key = (beacon_id, anchor_id)
        chain = self._chains.get(key)
        if chain is None:
            chain = FilterChain.from_settings(self.settings)
            self._chains[key] = chain
        return chain

    def peek_chain(self, beacon_id: str, anchor_id: int) -> FilterChain:
        """返回已登记的滤波链；不存在时返回一条未登记的新链，不修改状态表"""
        chain = self._chains.get((beacon_id, anchor_id))
        if chain is None:
            chain = FilterChain.from_settings(self.settings)
        return chain

    def store_chain(self, beacon_id: str, anchor_id: int, chain: FilterChain) -> None:
        self._chains[(beacon_id, anchor_id)] = chain

    def has_chain(self, beacon_id: str, anchor_id: int) -> bool:
        return (beacon_id, anchor_id) in self._chains

    def remove(self, beacon_id: str) -> bool:
        if self._beacons.pop(beacon_id, None) is None:
            return False
        for key in [k for k in self._chains if k[0] == beacon_id]:
            del self._chains[key]
        for fn in self._evict_listeners:
            fn(beacon_id)
        return True

    def _evict(self) -> None:
        if self.max_beacons <= 0:
            return
        while len(self._beacons) > self.max_beacons:
            oldest = next(iter(self._beacons))
            self.remove(oldest)
            logger.info("信标数量超过上限 %d，淘汰: %s", self.max_beacons, oldest)


class RssiWindowTracker:
    """
    备选测距方式：每个 (信标, 锚点) 保留最近 window_size 个原始 RSSI，
    直接取算术平均后换算距离，不经过卡尔曼滤波。
    """

    def __init__(self, calculator: LocationCalculator, window_size: int = 5):
        if window_size <= 0:
            raise ValueError(f"window_size must be > 0, got {window_size}")
        self.calculator = calculator
        self.window_size = window_size
        self._data: Dict[ChainKey, deque] = {}

    def update(self, beacon_id: str, anchor_id: int, rssi: float) -> float:
        """加入新样本并返回该锚点的平均距离；测距失败时窗口保持不变"""
        key = (beacon_id, anchor_id)
        candidate = (*self._data.get(key, ()), float(rssi))[-self.window_size:]
        distance = self.calculator.rssi_to_distance(sum(candidate) / len(candidate))
        self._data[key] = deque(candidate, maxlen=self.window_size)
        return distance

    def remove(self, beacon_id: str) -> None:
        for key in [k for k in self._data if k[0] == beacon_id]:
            del self._data[key]

    def average_distances(self, beacon_id: str) -> Optional[Dict[int, float]]:
        distances: Dict[int, float] = {}
        for (beacon, anchor_id), readings in self._data.items():
            if beacon == beacon_id and readings:
                avg_rssi = sum(readings) / len(readings)
                distances[anchor_id] = self.calculator.rssi_to_distance(avg_rssi)
        return distances or None
