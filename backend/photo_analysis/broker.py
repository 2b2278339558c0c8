# backend/photo_analysis/broker.py
"""
RabbitMQ adapter for the analysis queue.

pika's BlockingConnection is not thread-safe, so the connection lives on its
own I/O thread. Deliveries are handed to a single worker thread (prefetch=1
means there is never more than one) and acked/nacked back on the I/O thread via
add_callback_threadsafe. Calls from other threads (publish, depth, purge) are
marshalled the same way.

When the connection drops the adapter keeps retrying every reconnect_delay
seconds. on_connect callbacks fire after every successful (re)connect and
on_disconnect callbacks after every loss, which is how the coordinator swaps
between broker consumption and local polling.
"""
import json
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Any, Callable, Dict, List, Optional

import pika
from pika.exceptions import AMQPError

from . import config

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], None]


def decide_settlement(handler: Handler, body: bytes, redelivered: bool):
    """
    Run the handler for one delivery and return (ack, requeue).
    A failed message is requeued once; a failed redelivery is dropped so a
    poison message cannot loop forever.
    """
    try:
        message = json.loads(body)
        logger.info("processing report %s from broker", message.get("reportId"))
        handler(message)
    except Exception as e:
        logger.error("error processing broker message: %s", e)
        return False, not redelivered
    logger.info("report %s processed", message.get("reportId"))
    return True, False


class BrokerAdapter:
    def __init__(self, url: str = config.RABBITMQ_URL,
                 queue_name: str = config.ANALYSIS_QUEUE_NAME,
                 exchange_name: str = config.ANALYSIS_EXCHANGE_NAME,
                 routing_key: str = config.ANALYSIS_ROUTING_KEY,
                 reconnect_delay: float = config.BROKER_RECONNECT_DELAY,
                 connection_factory=pika.BlockingConnection):
        self.url = url
        self.queue_name = queue_name
        self.exchange_name = exchange_name
        self.routing_key = routing_key
        self.reconnect_delay = reconnect_delay
        self._connection_factory = connection_factory

        self._connection = None
        self._channel = None
        self._handler: Optional[Handler] = None
        self._consumer_tag = None
        self._on_connect: List[Callable[[], None]] = []
        self._on_disconnect: List[Callable[[], None]] = []

        self._io_thread: Optional[threading.Thread] = None
        self._stopping = threading.Event()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="broker-worker")

    # --- lifecycle ---

    def start(self):
        if self._io_thread and self._io_thread.is_alive():
            return
        self._stopping.clear()
        self._io_thread = threading.Thread(target=self._run, name="broker-io", daemon=True)
        self._io_thread.start()

    def stop(self, timeout: float = 10.0):
        self._stopping.set()
        if self._io_thread:
            self._io_thread.join(timeout)
        self._executor.shutdown(wait=False)
        logger.info("disconnected from RabbitMQ")

    def is_connected(self) -> bool:
        return (self._connection is not None and self._connection.is_open
                and self._channel is not None and self._channel.is_open)

    def on_connect(self, callback: Callable[[], None]):
        self._on_connect.append(callback)
        if self.is_connected():
            self._call(callback)

    def on_disconnect(self, callback: Callable[[], None]):
        self._on_disconnect.append(callback)

    def _connect(self):
        params = pika.URLParameters(self.url)
        self._connection = self._connection_factory(params)
        channel = self._connection.channel()
        channel.exchange_declare(exchange=self.exchange_name, exchange_type="direct", durable=True)
        channel.queue_declare(queue=self.queue_name, durable=True,
                              arguments={"x-max-priority": config.MAX_PRIORITY})
        channel.queue_bind(queue=self.queue_name, exchange=self.exchange_name, routing_key=self.routing_key)
        channel.basic_qos(prefetch_count=1)
        self._channel = channel
        self._consumer_tag = None
        logger.info("connected to RabbitMQ: %s", params.host)

    def _run(self):
        while not self._stopping.is_set():
            try:
                self._connect()
            except AMQPError as e:
                logger.warning("RabbitMQ unavailable (%s), retrying in %ss; local polling stays active",
                               e, self.reconnect_delay)
                # a declare can fail after the connection opened
                self._drop_connection()
                self._stopping.wait(self.reconnect_delay)
                continue

            self._fire(self._on_connect)
            try:
                while not self._stopping.is_set():
                    self._connection.process_data_events(time_limit=1)
            except AMQPError as e:
                logger.warning("RabbitMQ connection closed (%s), reconnecting in %ss", e, self.reconnect_delay)
            finally:
                self._drop_connection()

            if not self._stopping.is_set():
                self._fire(self._on_disconnect)
                self._stopping.wait(self.reconnect_delay)

    def _drop_connection(self):
        connection, self._connection, self._channel = self._connection, None, None
        if connection is not None and connection.is_open:
            try:
                connection.close()
            except AMQPError:
                logger.debug("error closing RabbitMQ connection", exc_info=True)

    def _fire(self, callbacks):
        for callback in list(callbacks):
            try:
                callback()
            except Exception:
                logger.exception("error running broker callback")

    def _call(self, fn, timeout: float = 10.0):
        """Run fn on the I/O thread and return its result."""
        if threading.current_thread() is self._io_thread or self._io_thread is None:
            return fn()
        if not self.is_connected():
            raise AMQPError("not connected")

        done = threading.Event()
        box = {}

        def wrapper():
            try:
                box["result"] = fn()
            except Exception as e:
                box["error"] = e
            finally:
                done.set()

        self._connection.add_callback_threadsafe(wrapper)
        if not done.wait(timeout):
            raise AMQPError("timed out waiting for the broker I/O thread")
        if "error" in box:
            raise box["error"]
        return box.get("result")

    # --- publishing ---

    def publish(self, message: Dict[str, Any], priority: int = config.DEFAULT_PRIORITY) -> bool:
        if not self.is_connected():
            logger.warning("RabbitMQ not connected, report %s not published", message.get("reportId"))
            return False

        priority = max(0, min(config.MAX_PRIORITY, int(priority)))
        body = json.dumps({**message, "priority": priority})
        properties = pika.BasicProperties(
            delivery_mode=pika.DeliveryMode.Persistent,
            priority=priority,
            content_type="application/json",
            timestamp=int(time.time()),
        )

        def _publish():
            self._channel.basic_publish(exchange=self.exchange_name, routing_key=self.routing_key,
                                        body=body, properties=properties)

        try:
            self._call(_publish)
        except AMQPError as e:
            logger.error("error publishing report %s: %s", message.get("reportId"), e)
            return False
        logger.info("report %s published to RabbitMQ", message.get("reportId"))
        return True

    # --- consuming ---

    def consume(self, handler: Handler) -> bool:
        self._handler = handler
        if not self.is_connected():
            logger.warning("RabbitMQ not connected, consumer not started")
            return False

        def _start():
            if self._consumer_tag is None:
                self._consumer_tag = self._channel.basic_consume(
                    queue=self.queue_name, on_message_callback=self._on_message, auto_ack=False)

        try:
            self._call(_start)
        except AMQPError as e:
            logger.error("error starting RabbitMQ consumer: %s", e)
            return False
        logger.info("RabbitMQ consumer started on %s", self.queue_name)
        return True

    def _on_message(self, channel, method, properties, body):
        connection = self._connection
        self._executor.submit(self._work, connection, channel, method.delivery_tag,
                              bool(method.redelivered), body)

    def _work(self, connection, channel, delivery_tag, redelivered, body):
        ack, requeue = decide_settlement(self._handler, body, redelivered)
        try:
            connection.add_callback_threadsafe(partial(self._settle, channel, delivery_tag, ack, requeue))
        except AMQPError:
            # connection is gone; the broker redelivers the unacked message
            logger.warning("could not settle delivery %s, connection lost", delivery_tag)

    def _settle(self, channel, delivery_tag, ack, requeue):
        if not channel.is_open:
            return
        if ack:
            channel.basic_ack(delivery_tag=delivery_tag)
        else:
            channel.basic_nack(delivery_tag=delivery_tag, multiple=False, requeue=requeue)

    # --- introspection ---

    def queue_depth(self) -> int:
        if not self.is_connected():
            return 0
        try:
            result = self._call(lambda: self._channel.queue_declare(queue=self.queue_name, passive=True))
            return result.method.message_count
        except AMQPError as e:
            logger.error("error reading queue depth: %s", e)
            return 0

    def purge(self) -> int:
        if not self.is_connected():
            return 0
        try:
            result = self._call(lambda: self._channel.queue_purge(queue=self.queue_name))
        except AMQPError as e:
            logger.error("error purging queue: %s", e)
            return 0
        count = result.method.message_count
        logger.warning("analysis queue purged: %d messages removed", count)
        return count
