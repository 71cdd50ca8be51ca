from __future__ import annotations

import logging
import threading
from typing import Optional

import paho.mqtt.client as mqtt
from paho.mqtt.client import MQTTMessage

from .anchor_store import AnchorStore
from .config_manager import ConfigManager
from .models import LocationOutcome
from .processor import ObservationProcessor


logger = logging.getLogger(__name__)


class MQTTDataProcessor:
    def __init__(self, config_manager: ConfigManager):
        self.lock = threading.Lock()
        self.config_manager = config_manager
        self.client: Optional[mqtt.Client] = None
        self.connect_error: Optional[OSError] = None

        # 锚点与定位流水线（配置错误在此处抛出 ConfigError）
        self.anchor_store = AnchorStore(self.config_manager)
        self.anchor_store.load()
        self.processor = ObservationProcessor(self.config_manager.get_settings(), self.anchor_store.all())

        mqtt_config = self.config_manager.get_mqtt_config()
        if mqtt_config.get("publish_outcomes"):
            self.processor.add_sink(self.publish_outcome)

    # ---------- MQTT ----------
    def start_mqtt_client(self) -> bool:
        """阻塞运行 MQTT 循环；连接失败时记录错误并返回 False"""
        self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        self.client.on_connect = self.on_connect
        self.client.on_message = self.on_message
        try:
            mqtt_config = self.config_manager.get_mqtt_config()
            self.client.connect(mqtt_config["ip"], mqtt_config["port"], 60)
            logger.info("连接到MQTT服务器 %s:%s", mqtt_config["ip"], mqtt_config["port"])
            self.client.loop_forever()
        except OSError as e:
            logger.error("MQTT连接错误: %s", e)
            self.connect_error = e
            return False
        return True

    def stop_mqtt_client(self):
        if self.client is not None:
            try:
                self.client.disconnect()
                self.client.loop_stop()
                logger.info("MQTT连接已断开")
            except Exception as e:
                logger.error("断开MQTT连接时出错: %s", e)

    def publish_outcome(self, outcome: LocationOutcome) -> None:
        if self.client is None:
            return
        mqtt_config = self.config_manager.get_mqtt_config()
        topic = mqtt_config.get("uplink_topic", "/beacon/position/{beaconId}")
        self.client.publish(topic.format(beaconId=outcome.beacon_id), outcome.to_json())

    # ---------- MQTT handlers ----------
    def on_connect(self, client, userdata, flags, reason_code, properties=None):
        if not reason_code.is_failure:
            logger.info("成功连接到MQTT服务器")
            topics = self.config_manager.get_mqtt_config().get("topics") or []
            for topic in topics:
                client.subscribe(topic)
                logger.info("已订阅主题: %s", topic)
        else:
            logger.error("连接失败，返回码: %s", reason_code)

    def on_message(self, client, userdata, msg: MQTTMessage):
        try:
            payload = msg.payload.decode("utf-8")
        except UnicodeDecodeError as e:
            logger.warning("消息解码失败 (%s): %s", msg.topic, e)
            return
        # 观测严格按到达顺序逐条处理
        with self.lock:
            self.processor.process_payload(payload)
