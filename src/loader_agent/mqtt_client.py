"""
MQTT client for the remote configuration store.

Each configuration field is a retained message. A read subscribes to the
field's topic, takes the first message delivered, and unsubscribes. Reads are
request/response with an explicit deadline and return a typed FetchResult;
they never raise to the caller.
"""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Iterable, Optional, TypeVar

import paho.mqtt.client as mqtt

from loader_agent.core.context import CancelToken
from loader_agent.mqtt_topics import ConfigTopics

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Granularity of deadline / cancellation checks while waiting on reads
_WAIT_SLICE_S = 0.2


class FetchError(RuntimeError):
    """Why a single-value read produced no value."""

    def __init__(self, key: str, reason: str) -> None:
        super().__init__(f"{key}: {reason}")
        self.key = key
        self.reason = reason


@dataclass(frozen=True, slots=True)
class FetchResult:
    key: str
    value: Any = None
    error: Optional[FetchError] = None
    raw: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap_or(self, default: T) -> T:
        """
        Value if the read succeeded and it has the default's type, else default.

        A text field whose payload happened to parse as a JSON scalar
        (2048, true) keeps the payload text.
        """
        if self.error is not None or self.value is None:
            return default
        if type(default) is bool:
            return self.value if isinstance(self.value, bool) else default
        if isinstance(default, str) and self.raw is not None and isinstance(self.value, (bool, int, float)):
            return self.raw.strip()
        if isinstance(self.value, type(default)) and not isinstance(self.value, bool):
            return self.value
        return default


def decode_payload(payload: bytes) -> Any:
    """
    Empty payload -> None (absent). JSON payloads decode to their value;
    anything else is taken as plain text.
    """
    if not payload:
        return None
    text = payload.decode("utf-8")
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def _is_failure(reason_code: Any) -> bool:
    is_failure = getattr(reason_code, "is_failure", None)
    if isinstance(is_failure, bool):
        return is_failure
    return reason_code != 0


class _PendingRead:
    def __init__(self, key: str, topic: str) -> None:
        self.key = key
        self.topic = topic
        self._event = threading.Event()
        self._result: Optional[FetchResult] = None
        self._lock = threading.Lock()

    def resolve(self, result: FetchResult) -> bool:
        """First resolution wins. Returns True if this call resolved the read."""
        with self._lock:
            if self._result is not None:
                return False
            self._result = result
        self._event.set()
        return True

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout=max(0.0, timeout))

    @property
    def result(self) -> FetchResult:
        if self._result is None:
            raise RuntimeError(f"read of {self.topic} has not resolved")
        return self._result


class RemoteConfigStore:
    """
    Read-only view of the remote configuration document.

    open() connects and starts the network loop; read_many() issues concurrent
    single-value reads; close() disconnects.
    """

    def __init__(
        self,
        host: str,
        port: int,
        topics: ConfigTopics,
        *,
        client_id: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        keepalive: int = 60,
    ) -> None:
        self.host = host
        self.port = port
        self.topics = topics
        self.client_id = client_id
        self.username = username
        self.password = password
        self.keepalive = keepalive

        self._client: Optional[mqtt.Client] = None
        self._connected = threading.Event()
        self._pending: dict[str, _PendingRead] = {}
        self._pending_lock = threading.Lock()

    def open(self, timeout: float) -> bool:
        """Connect and wait up to timeout seconds for the broker CONNACK."""
        try:
            client = mqtt.Client(
                callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
                client_id=self.client_id,
                protocol=mqtt.MQTTv311,
            )
            if self.username:
                client.username_pw_set(self.username, self.password)

            client.on_connect = self._on_connect
            client.on_disconnect = self._on_disconnect
            client.on_message = self._on_message

            self._client = client
            client.connect(self.host, self.port, keepalive=self.keepalive)
            client.loop_start()
        except Exception:
            logger.exception("Failed to connect to MQTT broker %s:%s", self.host, self.port)
            self._client = None
            return False

        if not self._connected.wait(timeout=max(0.0, timeout)):
            logger.warning("MQTT connection not established after %.1fs", timeout)
            return False
        return True

    def close(self) -> None:
        if not self._client:
            return
        client, self._client = self._client, None
        self._fail_pending("disconnected")
        try:
            client.loop_stop()
            client.disconnect()
        finally:
            self._connected.clear()

    def is_connected(self) -> bool:
        return bool(self._client and self._connected.is_set())

    def read_many(
        self,
        keys: Iterable[str],
        *,
        timeout: float,
        cancel: Optional[CancelToken] = None,
    ) -> dict[str, FetchResult]:
        """
        Read several fields concurrently under one shared deadline.

        Every key gets a FetchResult: a value, or a FetchError with reason
        timeout / cancelled / disconnected.
        """
        keys = list(keys)
        if not self.is_connected():
            return {k: FetchResult(k, error=FetchError(k, "disconnected")) for k in keys}

        reads = [self._start_read(k) for k in keys]
        deadline = time.monotonic() + max(0.0, timeout)

        for read in reads:
            while not read.wait(min(_WAIT_SLICE_S, max(0.0, deadline - time.monotonic()))):
                if cancel is not None and cancel.cancelled:
                    read.resolve(FetchResult(read.key, error=FetchError(read.key, "cancelled")))
                    break
                if time.monotonic() >= deadline:
                    read.resolve(FetchResult(read.key, error=FetchError(read.key, "timeout")))
                    break

        results: dict[str, FetchResult] = {}
        for read in reads:
            self._finish_read(read)
            result = read.result
            if not result.ok:
                logger.debug("Remote read failed: %s", result.error)
            results[read.key] = result
        return results

    def _start_read(self, key: str) -> _PendingRead:
        topic = self.topics.field(key)
        read = _PendingRead(key, topic)
        with self._pending_lock:
            self._pending[topic] = read
        client = self._client
        if client is None:
            read.resolve(FetchResult(key, error=FetchError(key, "disconnected")))
            return read
        client.subscribe(topic, qos=1)
        logger.debug("Subscribed: %s", topic)
        return read

    def _finish_read(self, read: _PendingRead) -> None:
        """Tear down the listener for a read, whatever its outcome."""
        with self._pending_lock:
            if self._pending.get(read.topic) is read:
                del self._pending[read.topic]
        client = self._client
        if client is not None:
            try:
                client.unsubscribe(read.topic)
            except Exception as exc:
                logger.warning("Failed to unsubscribe %s: %s", read.topic, exc)

    def _fail_pending(self, reason: str) -> None:
        with self._pending_lock:
            pending = list(self._pending.values())
        for read in pending:
            read.resolve(FetchResult(read.key, error=FetchError(read.key, reason)))

    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any = None) -> None:
        if _is_failure(reason_code):
            logger.error("MQTT connect failed rc=%s", reason_code)
            return
        logger.info("Connected to MQTT broker %s:%s", self.host, self.port)
        self._connected.set()

    def _on_disconnect(
        self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any = 0, properties: Any = None
    ) -> None:
        if _is_failure(reason_code):
            logger.warning("Unexpected disconnect rc=%s", reason_code)
        self._connected.clear()
        self._fail_pending("disconnected")

    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        with self._pending_lock:
            read = self._pending.get(msg.topic)
        if read is None:
            logger.debug("Ignoring message on %s", msg.topic)
            return
        try:
            value = decode_payload(msg.payload)
        except UnicodeDecodeError as exc:
            logger.error("Payload decode failed topic=%s err=%s", msg.topic, exc)
            read.resolve(FetchResult(read.key, error=FetchError(read.key, "undecodable")))
            return
        raw = msg.payload.decode("utf-8") if value is not None else None
        read.resolve(FetchResult(read.key, value=value, raw=raw))
