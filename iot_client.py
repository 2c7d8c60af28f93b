import time
import logging
from enum import Enum
from typing import BinaryIO, Tuple
import paho.mqtt.client as mqtt
from config import IoTSendConfig

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024


class SendResult(Enum):
    """Outcome of a single message send"""

    OK = "ok"
    NOT_CONNECTED = "not_connected"
    SOURCE_UNAVAILABLE = "source_unavailable"
    READ_ERROR = "read_error"
    PUBLISH_FAILED = "publish_failed"
    TIMEOUT = "timeout"

    @property
    def ok(self) -> bool:
        return self is SendResult.OK


class IoTClient:
    """Transport client that delivers IoT messages to the hub's MQTT broker"""

    def __init__(self, config: IoTSendConfig = None):
        """Initialize the transport client"""
        self.config = config or IoTSendConfig()
        self.client = None
        self.is_connected = False
        self.connect_refused = False
        self.verbose = False
        self.message_count = 0
        self._closed = False

        self._setup_client()

    def _setup_client(self):
        """Setup MQTT client with callbacks"""
        self.client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.config.CLIENT_ID,
            clean_session=self.config.CLEAN_SESSION
        )

        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_publish = self._on_publish

        if self.config.USERNAME and self.config.PASSWORD:
            self.client.username_pw_set(self.config.USERNAME, self.config.PASSWORD)

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        """Callback when connected to MQTT broker"""
        if reason_code.is_failure:
            self.is_connected = False
            self.connect_refused = True
            logger.error(f"Failed to connect to MQTT broker. Reason: {reason_code}")
        else:
            self.is_connected = True
            self.connect_refused = False
            logger.info(f"Connected to MQTT broker at {self.config.BROKER_HOST}:{self.config.BROKER_PORT}")

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        """Callback when disconnected from MQTT broker"""
        self.is_connected = False
        if reason_code.is_failure:
            logger.warning(f"Unexpected disconnection. Reason: {reason_code}")
        else:
            logger.info("Disconnected from MQTT broker")

    def _on_publish(self, client, userdata, mid, reason_code, properties):
        logger.debug(f"Message published with message ID: {mid}")

    def set_verbose(self, verbose: bool):
        """Enable or disable verbose transport output"""
        self.verbose = bool(verbose)
        if self.verbose:
            logger.setLevel(logging.DEBUG)
            self.client.enable_logger(logger)
        else:
            logger.setLevel(logging.NOTSET)
            self.client.disable_logger()

    def connect(self) -> bool:
        """Connect to MQTT broker and wait for the CONNACK"""
        try:
            logger.info(f"Connecting to MQTT broker at {self.config.BROKER_HOST}:{self.config.BROKER_PORT}")
            self.client.connect(
                self.config.BROKER_HOST,
                self.config.BROKER_PORT,
                self.config.KEEPALIVE
            )

            self.client.loop_start()

            start_time = time.time()
            while (not self.is_connected and not self.connect_refused
                   and (time.time() - start_time) < self.config.CONNECT_TIMEOUT):
                time.sleep(0.1)

            return self.is_connected

        except (OSError, ValueError) as e:
            logger.error(f"Failed to connect to MQTT broker: {e}")
            return False

    def _read_payload(self, source: BinaryIO, limit: int) -> Tuple[bytes, bool]:
        """Read at most limit bytes from source.

        Reading stops at the limit; one more byte is read to tell whether
        the payload was truncated. Returns the kept bytes and that flag.
        """
        kept = bytearray()
        while len(kept) < limit:
            data = source.read(min(READ_CHUNK_SIZE, limit - len(kept)))
            if not data:
                return bytes(kept), False
            if isinstance(data, str):
                data = data.encode("utf-8")
            kept += data[:limit - len(kept)]
        return bytes(kept), bool(source.read(1))

    def stream(self, headers: str, source: BinaryIO) -> SendResult:
        """Send the header block followed by the payload read from source.

        Blocks until the payload has been read and the broker has
        acknowledged the message (or PUBLISH_TIMEOUT expires).
        """
        if not self.is_connected:
            logger.error("Not connected to MQTT broker")
            return SendResult.NOT_CONNECTED

        header_bytes = headers.encode("utf-8")
        limit = max(self.config.MAX_MESSAGE_SIZE - len(header_bytes), 0)

        try:
            payload, truncated = self._read_payload(source, limit)
        except OSError as e:
            logger.error(f"Error reading message payload: {e}")
            return SendResult.READ_ERROR

        if truncated:
            logger.warning(f"Message truncated to {self.config.MAX_MESSAGE_SIZE} bytes")

        message = header_bytes + payload
        info = self.client.publish(self.config.TOPIC, message, self.config.QOS)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.error(f"Failed to publish message. Return code: {info.rc}")
            return SendResult.PUBLISH_FAILED

        try:
            info.wait_for_publish(timeout=self.config.PUBLISH_TIMEOUT)
        except (RuntimeError, ValueError) as e:
            logger.error(f"Error publishing message: {e}")
            return SendResult.PUBLISH_FAILED

        if not info.is_published():
            logger.error(f"Timed out waiting for message delivery to {self.config.TOPIC}")
            return SendResult.TIMEOUT

        self.message_count += 1
        logger.info(f"Published {len(message)} bytes to topic: {self.config.TOPIC}")
        return SendResult.OK

    def close(self):
        """Disconnect from MQTT broker and release the client"""
        if self._closed:
            return
        self._closed = True
        if self.client:
            if self.is_connected:
                self.client.disconnect()
            self.client.loop_stop()
            self.is_connected = False
            logger.info("Closed MQTT client")

    def get_stats(self) -> dict:
        """Get transport statistics"""
        return {
            "connected": self.is_connected,
            "message_count": self.message_count,
            "broker_host": self.config.BROKER_HOST,
            "broker_port": self.config.BROKER_PORT,
            "client_id": self.config.CLIENT_ID,
            "topic": self.config.TOPIC
        }
