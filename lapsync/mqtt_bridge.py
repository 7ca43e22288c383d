"""MQTT mirror of hub events for scoreboards without a WebSocket."""

import asyncio
import json
import logging
from typing import Any

import paho.mqtt.client as mqtt

from .config import MQTTConfig
from .events import Event, SessionStarted
from .hub import BroadcastHub, Subscription, SubscriptionClosed

logger = logging.getLogger(__name__)


class MQTTEventBridge:
    """Subscribes to the hub and republishes every event over MQTT.

    Events go to ``<prefix>/events``; the latest session start is kept on
    the retained topic ``<prefix>/session`` so late joiners learn the epoch.
    """

    def __init__(
        self,
        config: MQTTConfig,
        hub: BroadcastHub,
        client: mqtt.Client | None = None,
    ):
        self.config = config
        self.hub = hub

        # Paho MQTT client
        self._client = client or mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
        self._client.on_connect = self._handle_connect
        self._client.on_disconnect = self._handle_disconnect

        # Connection state
        self._connected = False
        self._subscription: Subscription | None = None
        self._task: asyncio.Task | None = None
        self.published = 0
        self.failed = 0

    @property
    def events_topic(self) -> str:
        return f"{self.config.topic_prefix}/events"

    @property
    def session_topic(self) -> str:
        return f"{self.config.topic_prefix}/session"

    def _handle_connect(
        self,
        client: mqtt.Client,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        """Handle connection to broker."""
        if reason_code == 0:
            self._connected = True
            logger.info(f"Connected to MQTT broker at {self.config.broker}:{self.config.port}")
        else:
            logger.error(f"Failed to connect to MQTT broker: {reason_code}")

    def _handle_disconnect(
        self,
        client: mqtt.Client,
        userdata: Any,
        disconnect_flags: Any,
        reason_code: Any,
        properties: Any = None,
    ) -> None:
        """Handle disconnection from broker."""
        self._connected = False
        logger.warning(f"Disconnected from MQTT broker: {reason_code}")

    async def start(self) -> bool:
        """Connect to the broker and start relaying events.

        Returns:
            True if the broker connection came up.
        """
        if self.config.username and self.config.password:
            self._client.username_pw_set(self.config.username, self.config.password)

        try:
            self._client.connect(self.config.broker, self.config.port, keepalive=60)
            self._client.loop_start()
        except Exception as e:
            logger.error(f"Failed to connect to MQTT broker: {e}")
            return False

        # Relay regardless; paho reconnects on its own and publish() reports failures
        self._subscription = self.hub.subscribe(name="mqtt-bridge", max_pending=None)
        self._task = asyncio.create_task(self._relay(self._subscription))

        # Wait for connection
        for _ in range(50):  # 5 second timeout
            if self._connected:
                return True
            await asyncio.sleep(0.1)

        logger.error("Timeout waiting for MQTT connection")
        return False

    async def stop(self) -> None:
        """Stop relaying and disconnect from the broker."""
        if self._subscription:
            self._subscription.close()
            self._subscription = None
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        self._client.loop_stop()
        self._client.disconnect()
        self._connected = False

    async def _relay(self, subscription: Subscription) -> None:
        while True:
            try:
                event = await subscription.get()
            except SubscriptionClosed:
                return

            try:
                self.publish_event(event)
            except Exception as e:
                logger.error(f"MQTT relay error: {e}", exc_info=True)

    def publish_event(self, event: Event) -> bool:
        """Publish one event, and the session topic on session start.

        Returns:
            True if paho accepted the event message.
        """
        payload = json.dumps(event.to_dict())
        result = self._client.publish(self.events_topic, payload, qos=1)
        ok = result.rc == mqtt.MQTT_ERR_SUCCESS

        if isinstance(event, SessionStarted):
            self._client.publish(self.session_topic, payload, qos=1, retain=True)

        if ok:
            self.published += 1
        else:
            self.failed += 1
            logger.warning(f"MQTT publish of {event.type} failed: rc={result.rc}")
        return ok

    @property
    def is_connected(self) -> bool:
        """Check if connected to broker."""
        return self._connected
