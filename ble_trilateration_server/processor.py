from __future__ import annotations

import logging
from typing import Callable, Iterable, List, Mapping, Optional

from .beacon_registry import BeaconRegistry, RssiWindowTracker
from .calculator import LocationCalculator
from .config_manager import PipelineSettings
from .exceptions import ConfigError, NonFiniteValueError, ObservationError
from .models import Anchor, DistanceMode, LocationOutcome, Observation, OutcomeStatus


logger = logging.getLogger(__name__)

OutcomeSink = Callable[[LocationOutcome], None]


class ObservationProcessor:
    """
    单条观测的处理流程：
    滤波 -> 测距 -> 更新距离表 -> (>=3 个锚点) 三边定位 -> 异常值过滤 -> 输出结果事件
    任何一步出错只丢弃当前观测，不影响其它信标。
    """

    def __init__(
        self,
        settings: PipelineSettings,
        anchors: Mapping[int, Anchor],
        sinks: Optional[Iterable[OutcomeSink]] = None,
    ):
        self.settings = settings.validate()
        if len(anchors) < 3:
            raise ConfigError(f"至少需要 3 个锚点，当前 {len(anchors)} 个")
        self.calculator = LocationCalculator(self.settings, anchors)
        self.registry = BeaconRegistry(self.settings)
        self.window_tracker = RssiWindowTracker(self.calculator, self.settings.window_size)
        self.registry.add_evict_listener(self.window_tracker.remove)
        self._sinks: List[OutcomeSink] = list(sinks or [])

    def add_sink(self, fn: OutcomeSink) -> None:
        self._sinks.append(fn)

    # ---------- Core processing ----------
    def process_payload(self, payload: str | bytes) -> Optional[LocationOutcome]:
        try:
            observation = Observation.parse(payload)
        except ObservationError as e:
            logger.warning("消息解析失败，已丢弃: %s", e)
            return None
        return self.process(observation)

    def process(self, observation: Observation) -> Optional[LocationOutcome]:
        try:
            outcome = self._locate(observation)
        except ObservationError as e:
            logger.warning("无效观测 %s/%s，已丢弃: %s", observation.beacon_id, observation.anchor_id, e)
            return None
        except NonFiniteValueError as e:
            logger.warning("数值异常 %s/%s，已丢弃: %s", observation.beacon_id, observation.anchor_id, e)
            return None
        except Exception as e:
            logger.exception("处理观测出错: %s", e)
            return None

        if outcome is not None:
            self._emit(outcome)
        return outcome

    def _locate(self, obs: Observation) -> Optional[LocationOutcome]:
        if self.registry.is_denied(obs.beacon_id):
            return None
        if obs.anchor_id not in self.calculator.anchors:
            raise ObservationError(f"未知锚点: {obs.anchor_id}")

        # 数值全部有效后才登记信标、写入滤波状态与距离表
        if self.settings.distance_mode is DistanceMode.WINDOW_AVERAGE:
            self.window_tracker.update(obs.beacon_id, obs.anchor_id, obs.rssi)
            state = self.registry.get_or_create(obs.beacon_id)
            state.distances = self.window_tracker.average_distances(obs.beacon_id) or {}
        else:
            chain = self.registry.peek_chain(obs.beacon_id, obs.anchor_id)
            filter_pass = chain.preview(obs.rssi)
            distance = self.calculator.rssi_to_distance(filter_pass.value)
            state = self.registry.get_or_create(obs.beacon_id)
            self.registry.store_chain(obs.beacon_id, obs.anchor_id, chain)
            chain.commit(filter_pass)
            state.distances[obs.anchor_id] = distance
            logger.debug(
                "beacon=%s anchor=%s ts=%s raw=%.2f stages=%s distance=%.3f",
                obs.beacon_id,
                obs.anchor_id,
                obs.timestamp,
                filter_pass.raw,
                ["%.2f" % v for v in filter_pass.stage_values],
                distance,
            )

        anchor_count = len(state.distances)
        if anchor_count < 3:
            return LocationOutcome.no_fix(obs, anchor_count)

        point = self.calculator.trilaterate(state.distances)
        if point is None:
            logger.debug("信标 %s 锚点几何退化，无法定位", obs.beacon_id)
            return LocationOutcome.no_fix(obs, anchor_count)

        if state.guard.check_and_update(point):
            return LocationOutcome.accepted(obs, point, anchor_count)
        return LocationOutcome.rejected(obs, point, anchor_count)

    def _emit(self, outcome: LocationOutcome) -> None:
        if outcome.status is OutcomeStatus.ACCEPTED:
            logger.info("信标 %s 位置: x=%.2f, y=%.2f", outcome.beacon_id, outcome.x, outcome.y)
        elif outcome.status is OutcomeStatus.REJECTED:
            logger.warning("信标 %s 位置异常已剔除: x=%.2f, y=%.2f", outcome.beacon_id, outcome.x, outcome.y)
        else:
            logger.debug("信标 %s 暂无定位结果 (锚点数 %d)", outcome.beacon_id, outcome.anchor_count)

        for sink in self._sinks:
            try:
                sink(outcome)
            except Exception as e:
                logger.exception("结果输出出错: %s", e)
