from __future__ import annotations

import logging
import socket
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Protocol

from kombu import Connection, Exchange, Queue
from kombu.message import Message

log = logging.getLogger("message_channel")

Handler = Callable[[dict], object]


class BrokerUnavailable(Exception):
    pass


class Subscription(Protocol):
    def stop(self, timeout: float | None = None) -> None: ...

    def is_alive(self) -> bool: ...


class MessageChannel(Protocol):
    """What the delivery pipeline needs from a broker.

    Handlers passed to consume() ack by returning and reject (without
    requeue) by raising.
    """

    def connect(self) -> None: ...

    def ensure_connected(self) -> None: ...

    def is_active(self) -> bool: ...

    def close(self) -> None: ...

    def declare_queue(self, queue_name: str, topic: str) -> None: ...

    def publish(
        self,
        topic: str,
        payload: dict,
        *,
        key: str | None = None,
        message_id: str | None = None,
        persistent: bool = True,
    ) -> bool: ...

    def consume(self, queue_name: str, topic: str, handler: Handler, *, concurrency: int = 1) -> Subscription: ...


class KombuChannel:
    """MessageChannel over a kombu connection and one topic exchange.

    Publishing shares one connection behind a lock; each subscription
    gets its own cloned connection and thread.
    """

    def __init__(
        self,
        url: str,
        *,
        exchange_name: str = "campaign_messaging",
        max_retries: int = 3,
        connect_timeout_s: float = 5.0,
    ) -> None:
        self.url = url
        self.exchange = Exchange(exchange_name, type="topic", durable=True)
        self.max_retries = max_retries
        self.connect_timeout_s = connect_timeout_s
        self._connection: Connection | None = None
        self._queues: dict[str, Queue] = {}
        self._lock = threading.RLock()

    def connect(self) -> None:
        with self._lock:
            if self.is_active():
                return
            conn = Connection(self.url, connect_timeout=self.connect_timeout_s)

            def _errback(exc: Exception, interval: float) -> None:
                log.warning("Broker connection failed: %s; retrying in %.1fs", exc, interval)

            try:
                conn.ensure_connection(
                    errback=_errback,
                    max_retries=self.max_retries,
                    interval_start=1,
                    interval_step=1,
                    interval_max=5,
                )
            except Exception as e:
                conn.release()
                raise BrokerUnavailable(f"Cannot connect to broker: {e}") from e
            self._connection = conn
            log.info("Broker connected (exchange=%s)", self.exchange.name)

    def ensure_connected(self) -> None:
        self.connect()

    def is_active(self) -> bool:
        conn = self._connection
        try:
            return conn is not None and bool(conn.connected)
        except Exception:
            return False

    def close(self) -> None:
        with self._lock:
            if self._connection is None:
                return
            try:
                self._connection.release()
            finally:
                self._connection = None
                log.info("Broker connection closed")

    def declare_queue(self, queue_name: str, topic: str) -> None:
        with self._lock:
            queue = Queue(queue_name, exchange=self.exchange, routing_key=topic, durable=True)
            self._queues[queue_name] = queue
            if self._connection is not None:
                queue(self._connection.default_channel).declare()

    def publish(
        self,
        topic: str,
        payload: dict,
        *,
        key: str | None = None,
        message_id: str | None = None,
        persistent: bool = True,
    ) -> bool:
        with self._lock:
            if not self.is_active():
                raise BrokerUnavailable("Broker connection is not active")
            producer = self._connection.Producer(serializer="json")
            producer.publish(
                payload,
                exchange=self.exchange,
                routing_key=topic,
                declare=[self.exchange, *self._queues.values()],
                delivery_mode=2 if persistent else 1,
                correlation_id=key,
                message_id=message_id,
                retry=True,
                retry_policy={"max_retries": self.max_retries, "interval_start": 0.5, "interval_step": 1},
            )
        return True

    def consume(self, queue_name: str, topic: str, handler: Handler, *, concurrency: int = 1) -> KombuSubscription:
        with self._lock:
            if not self.is_active():
                raise BrokerUnavailable("Broker connection is not active")
            queue = Queue(queue_name, exchange=self.exchange, routing_key=topic, durable=True)
            self._queues[queue_name] = queue
            conn = self._connection.clone()
        sub = KombuSubscription(conn, queue, handler, concurrency=concurrency)
        sub.start()
        return sub


class KombuSubscription:
    """Consumer thread: prefetch window == handler pool width.

    Acks and rejects happen on the consumer thread, since kombu
    channels are not thread-safe; handlers only run in the pool.
    """

    def __init__(
        self,
        connection: Connection,
        queue: Queue,
        handler: Handler,
        *,
        concurrency: int = 1,
        poll_s: float = 0.5,
    ) -> None:
        self._connection = connection
        self._queue = queue
        self._handler = handler
        self.concurrency = max(1, concurrency)
        self._poll_s = poll_s
        self._pool = ThreadPoolExecutor(max_workers=self.concurrency, thread_name_prefix=f"consume-{queue.name}")
        self._inflight: list[tuple[Future, Message]] = []
        self._stop = threading.Event()
        self._ready = threading.Event()
        self._error: BaseException | None = None
        self._thread = threading.Thread(target=self._run, name=f"subscription-{queue.name}", daemon=True)

    def start(self) -> None:
        self._thread.start()
        self._ready.wait(timeout=10)
        if self._error is not None:
            raise BrokerUnavailable(f"Cannot start consumer on {self._queue.name}: {self._error}") from self._error

    def is_alive(self) -> bool:
        return self._thread.is_alive() and not self._stop.is_set()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout)
            if self._thread.is_alive():
                log.warning("Consumer on %s did not stop within %ss", self._queue.name, timeout)

    def _on_message(self, body: dict, message: Message) -> None:
        self._inflight.append((self._pool.submit(self._handler, body), message))

    def _on_decode_error(self, message: Message, exc: Exception) -> None:
        log.error("Rejecting undecodable message on %s: %s", self._queue.name, exc)
        message.reject(requeue=False)

    def _settle(self, *, wait: bool = False) -> None:
        pending: list[tuple[Future, Message]] = []
        for fut, message in self._inflight:
            if not wait and not fut.done():
                pending.append((fut, message))
                continue
            exc = fut.exception()
            if exc is None:
                message.ack()
            else:
                log.error("Handler failed on %s; rejecting without requeue: %s", self._queue.name, exc)
                message.reject(requeue=False)
        self._inflight = pending

    def _run(self) -> None:
        try:
            self._connection.ensure_connection(max_retries=1)
            with self._connection.Consumer(
                [self._queue],
                callbacks=[self._on_message],
                accept=["json"],
                prefetch_count=self.concurrency,
                on_decode_error=self._on_decode_error,
            ):
                self._ready.set()
                while not self._stop.is_set():
                    try:
                        self._connection.drain_events(timeout=self._poll_s)
                    except socket.timeout:
                        pass
                    self._settle()
                # graceful drain: finish what was handed to the pool
                self._settle(wait=True)
        except Exception as e:
            if not self._ready.is_set():
                self._error = e
            else:
                log.exception("Consumer on %s crashed", self._queue.name)
        finally:
            self._ready.set()
            self._pool.shutdown(wait=False)
            try:
                self._connection.release()
            except Exception:
                log.debug("Ignoring error while releasing consumer connection", exc_info=True)
