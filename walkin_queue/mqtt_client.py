"""Small MQTT helper built on top of paho-mqtt.

- `MqttClient` manages the connection, a background network loop, JSON
  encoding and a blocking `request()` helper correlated by `corr_id`.
- `MqttEventBus` publishes queue events on the broadcast and per-customer
  topics so displays can update without polling.

Queue events use QoS 1 (at-least-once); subscribers must tolerate
duplicates. Request/response traffic uses QoS 0 because callers time out and
retry anyway.
"""

from __future__ import annotations

import json
import logging
import queue
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Callable

import paho.mqtt.client as mqtt

from .mqtt_topics import customer_events, queue_events
from .notifier import QueueEvent

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str, dict[str, Any]], None]


@dataclass(frozen=True)
class PendingResponse:
    corr_id: str
    q: "queue.Queue[dict[str, Any]]"


class MqttClient:
    """Thin wrapper around paho-mqtt with JSON convenience APIs."""

    def __init__(
        self,
        *,
        client_id: str,
        host: str,
        port: int,
        keepalive: int = 30,
    ) -> None:
        self.client_id = client_id
        self.host = host
        self.port = port
        self.keepalive = keepalive

        self._client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2, client_id=client_id, clean_session=True
        )
        self._client.on_message = self._on_message

        # External subscribers. Called with (topic, json_message).
        self._handlers: list[MessageHandler] = []

        # corr_id -> queue used by request()
        self._pending: dict[str, PendingResponse] = {}
        self._lock = threading.Lock()

        self._started = False

    def start(self) -> None:
        """Connect and start the background network loop."""
        if self._started:
            return
        self._client.connect(self.host, self.port, keepalive=self.keepalive)
        self._client.loop_start()
        self._started = True
        logger.debug("mqtt client %s connected to %s:%d", self.client_id, self.host, self.port)

    def stop(self) -> None:
        """Stop and disconnect."""
        if not self._started:
            return
        self._client.loop_stop()
        self._client.disconnect()
        self._started = False

    def add_handler(self, handler: MessageHandler) -> None:
        self._handlers.append(handler)

    def subscribe(self, topic: str, *, qos: int = 0) -> None:
        self._client.subscribe(topic, qos=qos)

    def publish(self, topic: str, message: dict[str, Any], *, qos: int = 0) -> None:
        payload = json.dumps(message, separators=(",", ":")).encode("utf-8")
        self._client.publish(topic, payload=payload, qos=qos)

    def request(
        self,
        *,
        request_topic: str,
        response_topic: str,
        message: dict[str, Any],
        timeout: float = 5.0,
    ) -> dict[str, Any]:
        """Publish a message and wait for a correlated response.

        The caller must ensure we are subscribed to `response_topic`.
        """
        corr_id = str(uuid.uuid4())
        msg = dict(message)
        msg["corr_id"] = corr_id
        msg["reply_to"] = response_topic

        q: "queue.Queue[dict[str, Any]]" = queue.Queue(maxsize=1)
        with self._lock:
            self._pending[corr_id] = PendingResponse(corr_id=corr_id, q=q)

        self.publish(request_topic, msg)

        try:
            return q.get(timeout=timeout)
        except queue.Empty as e:
            raise TimeoutError(f"No response for corr_id={corr_id}") from e
        finally:
            with self._lock:
                self._pending.pop(corr_id, None)

    # -------------------- internal callbacks --------------------

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        raw = msg.payload
        try:
            payload = raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)
            data = json.loads(payload)
        except (UnicodeDecodeError, json.JSONDecodeError):
            logger.warning("dropping malformed message on %s", msg.topic)
            return
        if not isinstance(data, dict):
            logger.warning("dropping non-object message on %s", msg.topic)
            return

        # Responses to our own requests never reach the handlers.
        corr_id = data.get("corr_id")
        if isinstance(corr_id, str):
            with self._lock:
                pending = self._pending.get(corr_id)
            if pending is not None:
                try:
                    pending.q.put_nowait(data)
                except queue.Full:
                    logger.debug("duplicate response for corr_id=%s ignored", corr_id)
                return

        for h in list(self._handlers):
            try:
                h(msg.topic, data)
            except Exception:
                # Keep the network loop alive whatever a handler does.
                logger.exception("handler failed for message on %s", msg.topic)


class MqttEventBus:
    """Event bus that fans queue events out over MQTT."""

    def __init__(self, mqtt_client: MqttClient, *, namespace: str, qos: int = 1) -> None:
        self.mqtt = mqtt_client
        self.namespace = namespace
        self.qos = qos

    def publish(self, event: QueueEvent) -> None:
        message = event.to_message()
        self.mqtt.publish(queue_events(self.namespace), message, qos=self.qos)
        self.mqtt.publish(customer_events(event.customer_id, self.namespace), message, qos=self.qos)
