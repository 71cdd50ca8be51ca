from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from typing import List

import pandas as pd

from .anchor_store import AnchorStore
from .config_manager import ConfigManager
from .exceptions import ConfigError, ObservationError
from .models import LocationOutcome, Observation
from .mqtt_processor import MQTTDataProcessor
from .processor import ObservationProcessor


logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def run_mqtt(args):
    config = ConfigManager(args.config)
    processor = MQTTDataProcessor(config)

    t = threading.Thread(target=processor.start_mqtt_client, daemon=True)
    t.start()

    # graceful shutdown
    def handle_sigint(sig, frame):
        processor.stop_mqtt_client()
        sys.exit(0)

    signal.signal(signal.SIGINT, handle_sigint)
    signal.signal(signal.SIGTERM, handle_sigint)

    t.join()
    # 连接失败时以非零状态退出
    return 1 if processor.connect_error is not None else 0


def _build_processor(config: ConfigManager) -> ObservationProcessor:
    store = AnchorStore(config)
    store.load()
    return ObservationProcessor(config.get_settings(), store.all())


def run_replay(args):
    """按文件顺序回放观测 CSV（列: mac, esp, rssi, timestamp），输出定位结果"""
    config = ConfigManager(args.config)
    processor = _build_processor(config)

    df = pd.read_csv(args.input, dtype={"mac": str})
    outcomes: List[LocationOutcome] = []
    dropped = 0
    for row in df.to_dict(orient="records"):
        try:
            observation = Observation.from_dict(row)
        except ObservationError as e:
            logger.warning("回放数据行无效，已跳过: %s", e)
            dropped += 1
            continue
        outcome = processor.process(observation)
        if outcome is not None:
            outcomes.append(outcome)

    columns = ["beacon_id", "status", "timestamp", "x", "y", "anchor_count"]
    result = pd.DataFrame([o.to_dict() for o in outcomes], columns=columns)
    if args.output:
        result.to_csv(args.output, index=False, encoding="utf-8")
        logger.info("已写入 %d 条结果: %s", len(result), args.output)
    else:
        result.to_csv(sys.stdout, index=False)
    logger.info("回放完成: 观测 %d 条, 结果 %d 条, 跳过 %d 条", len(df), len(outcomes), dropped)
    return 0


def check_config(args):
    config = ConfigManager(args.config)
    processor = _build_processor(config)
    settings = processor.settings
    print(f"config: {config.config_file}")
    print(f"anchors: {len(processor.calculator.anchors)}")
    for anchor in processor.calculator.anchors.values():
        print(f"  {anchor.anchor_id}: ({anchor.x:.2f}, {anchor.y:.2f})")
    print(f"settings: {settings}")
    return 0


def main(argv=None):
    parser = argparse.ArgumentParser(prog="ble-trilateration-server", description="BLE Trilateration Server CLI")
    parser.add_argument("--config", default=None, help="配置文件路径，默认读取 ./config/config.yaml 或环境变量 BLE_TRILAT_CONFIG")
    parser.add_argument("--log-level", default="INFO", help="日志级别，默认 INFO")
    sub = parser.add_subparsers(dest="cmd")

    p_run = sub.add_parser("run", help="运行 MQTT 服务端监听")
    p_run.set_defaults(func=run_mqtt)

    p_replay = sub.add_parser("replay", help="回放观测 CSV 文件")
    p_replay.add_argument("--input", "-i", required=True, help="观测 CSV 文件")
    p_replay.add_argument("--output", "-o", default=None, help="结果 CSV 文件，默认输出到标准输出")
    p_replay.set_defaults(func=run_replay)

    p_check = sub.add_parser("check-config", help="检查配置与锚点文件")
    p_check.set_defaults(func=check_config)

    args = parser.parse_args(argv)
    setup_logging(args.log_level)
    # 无子命令/无参数时默认启动服务器
    func = getattr(args, "func", run_mqtt)
    try:
        return func(args)
    except ConfigError as e:
        logger.error("配置错误: %s", e)
        return 2


if __name__ == "__main__":
    sys.exit(main())
