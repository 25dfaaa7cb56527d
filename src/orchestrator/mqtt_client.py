"""
MQTT bridge for the orchestrator.

Handles:
- Publishing change events (JSON) for other processes to consume
- Accepting refresh requests for single hosts
- Auto-reconnect with exponential backoff
- Message queueing during disconnections
"""
import json
import logging
import queue
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import paho.mqtt.client as mqtt

from orchestrator.models import OrchestratorConfig

logger = logging.getLogger(__name__)


class MqttClientError(Exception):
    """Error during MQTT operations."""
    pass


def event_topic(prefix: str, event: str) -> str:
    """
    Topic of a change event; ``:`` separators become topic levels.

    Example:
        >>> event_topic("dockerfleet", "server:containers:updated")
        'dockerfleet/events/server/containers/updated'
    """
    return f"{prefix}/events/{event.replace(':', '/')}"


class MqttEventSink:
    """
    Event sink publishing to an MQTT broker.

    Also subscribes to ``<prefix>/refresh/+`` and forwards the host id of
    each request to the registered refresh handlers.
    """

    def __init__(self, config: OrchestratorConfig.MqttConfig):
        self.config = config
        self.client_id = config.client_id
        self.prefix = config.topic_prefix
        self.client: Optional[mqtt.Client] = None
        self.connected = False

        self.refresh_handlers: List[Callable[[str], None]] = []

        # Reconnection support
        self.should_reconnect = True
        self.reconnect_delay = 1
        self.max_reconnect_delay = 60
        self.reconnect_thread: Optional[threading.Thread] = None

        # Message queueing for disconnections
        self.message_queue: queue.Queue[Tuple[str, str, int]] = queue.Queue(maxsize=1000)

    def connect(self, timeout: float = 10.0) -> None:
        """
        Connect to the MQTT broker.

        Raises:
            MqttClientError: If connection fails
        """
        try:
            logger.info(f"Connecting to MQTT broker: {self.config.broker}:{self.config.port}")

            self.client = mqtt.Client(client_id=self.client_id, clean_session=False)
            self.client.on_connect = self._on_connect
            self.client.on_disconnect = self._on_disconnect
            self.client.on_message = self._on_message

            self.client.connect(self.config.broker, self.config.port, self.config.keepalive)
            self.client.loop_start()

            start_time = time.time()
            while not self.connected and (time.time() - start_time) < timeout:
                time.sleep(0.1)

            if not self.connected:
                raise MqttClientError("Connection timeout")

            logger.info("Connected to MQTT broker successfully")

        except MqttClientError:
            raise
        except Exception as e:
            raise MqttClientError(f"Failed to connect to MQTT broker: {e}")

    def disconnect(self) -> None:
        """Disconnect from the MQTT broker."""
        if self.client:
            logger.info("Disconnecting from MQTT broker")
            self.should_reconnect = False
            self.client.loop_stop()
            self.client.disconnect()
            self.connected = False

    def is_connected(self) -> bool:
        return self.connected

    def register_refresh_handler(self, handler: Callable[[str], None]) -> None:
        """Register ``handler(host_id)`` for incoming refresh requests."""
        self.refresh_handlers.append(handler)

    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: Dict[str, Any], rc: int) -> None:
        if rc == 0:
            logger.info("MQTT connection established")
            self.connected = True
            if self.config.accept_refresh_requests:
                topic = f"{self.prefix}/refresh/+"
                self.client.subscribe(topic)
                logger.info(f"Subscribed to: {topic}")
        else:
            logger.error(f"MQTT connection failed with code: {rc}")

    def _on_disconnect(self, client: mqtt.Client, userdata: Any, rc: int) -> None:
        self.connected = False
        if rc != 0:
            logger.warning(f"Unexpected MQTT disconnect (code: {rc}), will attempt reconnect")
            self._start_reconnect()
        else:
            logger.info("MQTT disconnected cleanly")

    def _start_reconnect(self) -> None:
        """Start reconnection attempts in background thread."""
        if not self.should_reconnect:
            return

        if self.reconnect_thread is None or not self.reconnect_thread.is_alive():
            self.reconnect_thread = threading.Thread(
                target=self._reconnect_loop,
                daemon=True,
                name="mqtt-reconnect"
            )
            self.reconnect_thread.start()

    def _reconnect_loop(self) -> None:
        """Attempt to reconnect with exponential backoff."""
        delay = self.reconnect_delay

        while self.should_reconnect and not self.connected:
            logger.info(f"Attempting MQTT reconnect in {delay}s...")
            time.sleep(delay)

            try:
                self.client.reconnect()
                logger.info("MQTT reconnection successful")
                self.reconnect_delay = 1
                self._flush_message_queue()
                break
            except (OSError, mqtt.WebsocketConnectionError) as e:
                logger.warning(f"MQTT reconnect failed: {e}")
                delay = min(delay * 2, self.max_reconnect_delay)

    def _flush_message_queue(self) -> None:
        """Publish queued messages after reconnection."""
        queue_size = self.message_queue.qsize()
        if queue_size == 0:
            return

        logger.info(f"Flushing {queue_size} queued messages...")
        flushed = 0
        failed = 0

        while True:
            try:
                topic, payload, qos = self.message_queue.get_nowait()
            except queue.Empty:
                break
            result = self.client.publish(topic, payload, qos=qos)
            if result.rc == mqtt.MQTT_ERR_SUCCESS:
                flushed += 1
            else:
                failed += 1
                logger.error(f"Failed to flush message to {topic}: {result.rc}")

        logger.info(f"Flushed {flushed} messages, {failed} failed")

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        topic = msg.topic
        if not topic.startswith(f"{self.prefix}/refresh/"):
            logger.debug(f"Ignoring message on {topic}")
            return

        host_id = topic.split("/")[-1]
        logger.info(f"Refresh requested over MQTT for host {host_id}")
        for handler in self.refresh_handlers:
            try:
                handler(host_id)
            except Exception as e:
                logger.error(f"Refresh handler failed for {host_id}: {e}", exc_info=True)

    def publish(self, event: str, payload: Dict[str, Any], qos: int = 1) -> None:
        """
        Publish a change event.

        If disconnected, the message is queued and sent upon reconnection.

        Raises:
            MqttClientError: If the queue is full or the publish fails
        """
        topic = event_topic(self.prefix, event)
        message = json.dumps({"event": event, "timestamp": time.time(), **payload})

        if not self.connected:
            try:
                self.message_queue.put_nowait((topic, message, qos))
                logger.debug(f"Not connected, queued event: {event}")
                return
            except queue.Full:
                raise MqttClientError("Message queue is full, cannot queue event")

        result = self.client.publish(topic, message, qos=qos)
        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            raise MqttClientError(f"Failed to publish event {event}: {result.rc}")
