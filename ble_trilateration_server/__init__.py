"""BLE Trilateration Server package.

This package provides:
- ConfigManager: YAML-based configuration management
- AnchorStore: anchor topology stored as CSV
- FilterChain: per (beacon, anchor) RSSI smoothing (moving average + Kalman)
- LocationCalculator: path-loss ranging and three-anchor trilateration
- PositionGuard: outlier rejection against recent accepted fixes
- ObservationProcessor: per-observation localization pipeline
- MQTTDataProcessor: MQTT ingestion
"""

from .config_manager import ConfigManager, PipelineSettings
from .anchor_store import AnchorStore
from .calculator import LocationCalculator, rssi_to_distance, trilaterate
from .filters import FilterChain, KalmanFilter1D, MovingAverageFilter
from .outlier import PositionGuard
from .processor import ObservationProcessor
from .mqtt_processor import MQTTDataProcessor

__all__ = [
    "ConfigManager",
    "PipelineSettings",
    "AnchorStore",
    "LocationCalculator",
    "rssi_to_distance",
    "trilaterate",
    "FilterChain",
    "KalmanFilter1D",
    "MovingAverageFilter",
    "PositionGuard",
    "ObservationProcessor",
    "MQTTDataProcessor",
]
