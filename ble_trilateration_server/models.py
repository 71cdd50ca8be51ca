from __future__ import annotations

import json
import math
from dataclasses import dataclass, asdict
from enum import Enum
from numbers import Integral, Real
from typing import Any, Dict, Mapping, Optional

from .exceptions import ObservationError


@dataclass(frozen=True)
class Point:
    x: float
    y: float


@dataclass(frozen=True)
class Anchor:
    anchor_id: int
    x: float
    y: float

    @property
    def position(self) -> Point:
        return Point(x=self.x, y=self.y)


class DistanceMode(Enum):
    FILTER_CHAIN = "filter_chain"
    WINDOW_AVERAGE = "window_average"


class OutcomeStatus(Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    NO_FIX = "no_fix"


def _require_int(data: Mapping[str, Any], key: str) -> int:
    value = data.get(key)
    # bool 是 int 的子类，需单独排除
    if isinstance(value, bool) or value is None:
        raise ObservationError(f"字段 {key!r} 缺失或类型错误: {value!r}")
    if isinstance(value, Integral):
        return int(value)
    if isinstance(value, float) and value.is_integer():
        return int(value)
    raise ObservationError(f"字段 {key!r} 不是整数: {value!r}")


@dataclass(frozen=True)
class Observation:
    """
    单条 RSSI 观测：某锚点在某时刻收到某信标的信号强度
    """

    beacon_id: str
    anchor_id: int
    rssi: float
    timestamp: int

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Observation":
        if not isinstance(data, Mapping):
            raise ObservationError(f"观测数据不是对象: {data!r}")

        mac = data.get("mac")
        if not isinstance(mac, str) or not mac:
            raise ObservationError(f"字段 'mac' 缺失或无效: {mac!r}")

        rssi = data.get("rssi")
        if isinstance(rssi, bool) or not isinstance(rssi, Real):
            raise ObservationError(f"字段 'rssi' 缺失或不是数值: {rssi!r}")
        if not math.isfinite(rssi):
            raise ObservationError(f"字段 'rssi' 不是有限数值: {rssi!r}")

        return cls(
            beacon_id=mac,
            anchor_id=_require_int(data, "esp"),
            rssi=float(rssi),
            timestamp=_require_int(data, "timestamp"),
        )

    @classmethod
    def parse(cls, payload: str | bytes) -> "Observation":
        """
        解析锚点上报的 JSON 消息，例如:
        {"mac": "AA:BB:CC:DD:EE:FF", "rssi": -65, "timestamp": 1620000000000, "major": 0, "minor": 0, "esp": 2}
        """
        try:
            data = json.loads(payload)
        except (TypeError, ValueError) as e:
            raise ObservationError(f"消息不是合法 JSON: {e}") from e
        return cls.from_dict(data)


@dataclass(frozen=True)
class LocationOutcome:
    """
    单条观测处理后的定位结果事件
    """

    beacon_id: str
    status: OutcomeStatus
    timestamp: int
    x: Optional[float] = None
    y: Optional[float] = None
    anchor_count: int = 0

    @classmethod
    def accepted(cls, obs: Observation, point: Point, anchor_count: int) -> "LocationOutcome":
        return cls(obs.beacon_id, OutcomeStatus.ACCEPTED, obs.timestamp, point.x, point.y, anchor_count)

    @classmethod
    def rejected(cls, obs: Observation, point: Point, anchor_count: int) -> "LocationOutcome":
        return cls(obs.beacon_id, OutcomeStatus.REJECTED, obs.timestamp, point.x, point.y, anchor_count)

    @classmethod
    def no_fix(cls, obs: Observation, anchor_count: int) -> "LocationOutcome":
        return cls(obs.beacon_id, OutcomeStatus.NO_FIX, obs.timestamp, anchor_count=anchor_count)

    @property
    def position(self) -> Optional[Point]:
        if self.x is not None and self.y is not None:
            return Point(x=self.x, y=self.y)
        return None

    def to_dict(self) -> Dict[str, Any]:
        # 过滤掉值为None的键，status 输出为字符串
        d = asdict(self)
        d["status"] = self.status.value
        return {k: v for k, v in d.items() if v is not None}

    def to_json(self) -> str:
        return json.dumps(self.to_dict())
