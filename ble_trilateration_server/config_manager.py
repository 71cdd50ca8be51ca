from __future__ import annotations

import copy
import logging
import math
import os
from dataclasses import dataclass
from typing import Any, Callable, Tuple

import yaml

from .exceptions import ConfigError
from .models import DistanceMode


logger = logging.getLogger(__name__)


def _env_or_default(env_key: str, default: Any, cast: Callable[[str], Any] = str) -> Any:
    v = os.environ.get(env_key)
    if v is not None:
        try:
            return cast(v)
        except Exception:
            return v
    return default


def _env_flag(v: str) -> bool:
    return v.lower() in ("1", "true", "yes")


def _env_list(v: str) -> list:
    return [item.strip() for item in v.split(",") if item.strip()]


def _as_int(value: Any, name: str) -> int:
    # 拒绝 2.7 之类的小数，不做截断
    if isinstance(value, bool):
        raise ConfigError(f"{name} 必须为整数: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("+-").isdigit():
        return int(value)
    raise ConfigError(f"{name} 必须为整数: {value!r}")


DEFAULT_CONFIG_PATH = _env_or_default(
    "BLE_TRILAT_CONFIG",
    os.path.join(".", "config", "config.yaml"),
)


@dataclass(frozen=True)
class PipelineSettings:
    """定位流水线参数（启动时读取一次，运行期不可变）"""

    tx_power: float = -59.0
    path_loss_exponent: float = 2.0
    use_moving_average: bool = True
    use_kalman: bool = True
    window_size: int = 5
    kalman_r: float = 0.5
    kalman_q: float = 0.2
    history_length: int = 5
    outlier_threshold: float = 1.0
    deny_list: Tuple[str, ...] = ()
    max_beacons: int = 0
    distance_mode: DistanceMode = DistanceMode.FILTER_CHAIN

    def validate(self) -> "PipelineSettings":
        """检查参数合法性，不合法时抛出 ConfigError"""
        if not math.isfinite(self.tx_power):
            raise ConfigError(f"rssi_model.tx_power 必须为有限数值: {self.tx_power}")
        if not (math.isfinite(self.path_loss_exponent) and self.path_loss_exponent > 0):
            raise ConfigError(f"rssi_model.path_loss_exponent 必须 > 0: {self.path_loss_exponent}")
        if self.window_size <= 0:
            raise ConfigError(f"filters.window_size 必须 > 0: {self.window_size}")
        for name in ("kalman_r", "kalman_q"):
            value = getattr(self, name)
            if not (math.isfinite(value) and value > 0):
                raise ConfigError(f"filters.{name} 必须 > 0: {value}")
        if self.history_length <= 0:
            raise ConfigError(f"outlier.history_length 必须 > 0: {self.history_length}")
        if not (math.isfinite(self.outlier_threshold) and self.outlier_threshold > 0):
            raise ConfigError(f"outlier.threshold 必须 > 0: {self.outlier_threshold}")
        if self.max_beacons < 0:
            raise ConfigError(f"registry.max_beacons 不能为负: {self.max_beacons}")
        return self

    @classmethod
    def from_config(cls, config: dict) -> "PipelineSettings":
        rssi = config.get("rssi_model", {})
        filters = config.get("filters", {})
        outlier = config.get("outlier", {})
        registry = config.get("registry", {})
        pipeline = config.get("pipeline", {})
        try:
            settings = cls(
                tx_power=float(rssi["tx_power"]),
                path_loss_exponent=float(rssi["path_loss_exponent"]),
                use_moving_average=bool(filters["use_moving_average"]),
                use_kalman=bool(filters["use_kalman"]),
                window_size=_as_int(filters["window_size"], "filters.window_size"),
                kalman_r=float(filters["kalman_r"]),
                kalman_q=float(filters["kalman_q"]),
                history_length=_as_int(outlier["history_length"], "outlier.history_length"),
                outlier_threshold=float(outlier["threshold"]),
                deny_list=tuple(str(mac) for mac in (registry.get("deny_list") or ())),
                max_beacons=_as_int(registry.get("max_beacons") or 0, "registry.max_beacons"),
                distance_mode=DistanceMode(pipeline.get("distance_mode", DistanceMode.FILTER_CHAIN.value)),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"配置项缺失或类型错误: {e}") from e
        return settings.validate()


class ConfigManager:
    """配置管理类，负责读写YAML配置文件"""

    def __init__(self, config_file: str | None = None):
        self.config_file = config_file or DEFAULT_CONFIG_PATH
        self.default_config = {
            "mqtt": {
                "ip": _env_or_default("BLE_MQTT_IP", "localhost"),
                "port": _env_or_default("BLE_MQTT_PORT", 1883, int),
                "topics": _env_or_default(
                    "BLE_MQTT_TOPICS",
                    ["esp32_1/rssi", "esp32_2/rssi", "esp32_3/rssi", "esp32_4/rssi"],
                    _env_list,
                ),
                "uplink_topic": _env_or_default("BLE_MQTT_UPLINK_TOPIC", "/beacon/position/{beaconId}"),
                "publish_outcomes": _env_or_default("BLE_MQTT_PUBLISH", False, _env_flag),
            },
            "rssi_model": {
                "tx_power": _env_or_default("BLE_RSSI_TX_POWER", -59.0, float),
                "path_loss_exponent": _env_or_default("BLE_RSSI_PATH_LOSS", 2.0, float),
            },
            "filters": {
                "use_moving_average": _env_or_default("BLE_FILTER_USE_MA", True, _env_flag),
                "use_kalman": _env_or_default("BLE_FILTER_USE_KALMAN", True, _env_flag),
                "window_size": _env_or_default("BLE_FILTER_WINDOW", 5, int),
                "kalman_r": _env_or_default("BLE_FILTER_KALMAN_R", 0.5, float),
                "kalman_q": _env_or_default("BLE_FILTER_KALMAN_Q", 0.2, float),
            },
            "outlier": {
                "history_length": _env_or_default("BLE_OUTLIER_HISTORY", 5, int),
                "threshold": _env_or_default("BLE_OUTLIER_THRESHOLD", 1.0, float),
            },
            "registry": {
                "deny_list": _env_or_default("BLE_DENY_LIST", [], _env_list),
                "max_beacons": _env_or_default("BLE_MAX_BEACONS", 0, int),
            },
            "pipeline": {
                "distance_mode": _env_or_default("BLE_DISTANCE_MODE", DistanceMode.FILTER_CHAIN.value),
            },
            "paths": {
                "anchor_db": _env_or_default(
                    "BLE_PATH_ANCHOR_DB", os.path.join(".", "anchors", "anchors.csv")
                ),
            },
        }
        self.load_config()

    def load_config(self) -> None:
        """加载配置文件，如果不存在则创建默认配置"""
        if not os.path.exists(self.config_file):
            self.config = copy.deepcopy(self.default_config)
            self.save_config()
            return
        try:
            with open(self.config_file, "r", encoding="utf-8") as f:
                self.config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"无法读取配置文件 {self.config_file}: {e}") from e
        if not isinstance(self.config, dict):
            raise ConfigError(f"配置文件 {self.config_file} 顶层必须是映射")
        self._merge_default_config()

    def _merge_default_config(self) -> None:
        def merge_dict(default, current):
            for key, value in default.items():
                if key not in current:
                    current[key] = copy.deepcopy(value)
                elif isinstance(value, dict) and isinstance(current[key], dict):
                    merge_dict(value, current[key])

        merge_dict(self.default_config, self.config)

    def save_config(self) -> None:
        try:
            os.makedirs(os.path.dirname(self.config_file) or ".", exist_ok=True)
            with open(self.config_file, "w", encoding="utf-8") as f:
                yaml.dump(
                    self.config,
                    f,
                    default_flow_style=False,
                    allow_unicode=True,
                    indent=2,
                )
        except OSError as e:
            # 保存失败不影响运行，仅记录
            logger.warning("保存配置文件失败 %s: %s", self.config_file, e)

    # ---------- Accessors ----------
    def get_mqtt_config(self):
        return self.config["mqtt"]

    def get_rssi_model_config(self):
        return self.config["rssi_model"]

    def get_paths(self):
        return self.config.get("paths", {})

    def get_anchor_db_path(self):
        return self.get_paths()["anchor_db"]

    def get_settings(self) -> PipelineSettings:
        return PipelineSettings.from_config(self.config)

    def set_mqtt_config(self, ip, port, topics=None, uplink_topic=None):
        self.config["mqtt"]["ip"] = ip
        self.config["mqtt"]["port"] = port
        if topics is not None:
            self.config["mqtt"]["topics"] = list(topics)
        if uplink_topic is not None:
            self.config["mqtt"]["uplink_topic"] = uplink_topic
        self.save_config()

    def set_rssi_model_config(self, tx_power: float, path_loss_exponent: float):
        self.config["rssi_model"]["tx_power"] = tx_power
        self.config["rssi_model"]["path_loss_exponent"] = path_loss_exponent
        self.save_config()
