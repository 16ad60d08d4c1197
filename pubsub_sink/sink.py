import logging
import signal
import time
from collections import defaultdict
from functools import partial
from multiprocessing import Event

from common.batcher import ShardGrouper
from common.counters import FAILED_FIRINGS, Counters
from common.errors import ClientLifecycleError
from protocol.message_protocol import MessageProtocol
from protocol.rabbit_client import RabbitClientFactory
from protocol.rabbit_protocol import RabbitMQ
from pubsub_sink.batch_publisher import BatchPublisher
from pubsub_sink.codecs import get_codec
from pubsub_sink.encoder import MessageEncoder, RecordIdMethod

logging.getLogger("pika").setLevel(logging.ERROR)


class ShardedSink:
    """Consumes raw elements and publishes them to a topic in sharded, bounded batches.

    Every delivery is encoded, buffered in the pane of a random shard and
    snapshotted before it is acked. Panes that reach the count threshold fire
    right after the ack, the rest fire from timers scheduled on the consuming
    connection, so all stages run in the consuming thread. A failed firing
    stays buffered and is retried whole one latency window later.

    Messages restored from snapshots are remembered until the first fresh
    delivery arrives: a redelivered element matching one of them (same
    payload and event time) was snapshotted but not acked before a crash,
    and is not buffered a second time.
    """

    def __init__(self, config, client_factory=None, clock=time.monotonic, rng=None):
        self.config = config
        self.protocol = MessageProtocol()
        self.counters = Counters()
        self.codec = get_codec(config["element_codec"])
        self.queue_rcv = None
        self.stop_event = Event()
        self._clock = clock
        self._timer = None
        self._timer_deadline = None

        self.client_factory = client_factory or RabbitClientFactory(
            config["rabbit_host"],
            exchange_type=config["exc_snd_type"],
            routing_key=config["routing_snd_key"],
            mandatory=config["mandatory"],
        )
        self.encoder = MessageEncoder(
            self.codec,
            config["num_shards"],
            record_id_method=RecordIdMethod.parse(config["record_id_method"]),
            id_label=config["id_label"],
            counters=self.counters,
            rng=rng,
        )
        self.publisher = BatchPublisher(
            self.client_factory,
            config["topic"],
            timestamp_label=config["timestamp_label"],
            id_label=config["id_label"],
            publish_batch_size=config["publish_batch_size"],
            publish_batch_bytes=config["publish_batch_bytes"],
            counters=self.counters,
        )
        self.grouper = ShardGrouper(
            self.publisher.process,
            max_items=config["publish_batch_size"],
            max_latency=config["max_latency"],
            clock=clock,
            backup_dir=config.get("backup_dir"),
            encode_fn=self.protocol.encode_batch,
            decode_fn=self.protocol.decode_segments,
        )
        self._replayable = self._index_restored()

    def run(self):
        """Consume the input queue until stopped."""
        signal.signal(signal.SIGTERM, self._handle_shutdown)
        signal.signal(signal.SIGINT, self._handle_shutdown)

        self.queue_rcv = RabbitMQ(
            self.config["rabbit_host"],
            self.config["exchange_rcv"],
            self.config["queue_rcv_name"],
            self.config["routing_rcv_key"],
            self.config["exc_rcv_type"],
        )
        logging.info(f"Ready receiving queue with Exchange: {self.config['exchange_rcv']}, Name: {self.config['queue_rcv_name']}")
        logging.info(
            f"Publishing to '{self.config['topic']}' with {self.encoder.num_shards} shards, "
            f"batch size {self.publisher.publish_batch_size}, batch bytes {self.publisher.publish_batch_bytes}, "
            f"max latency {self.config['max_latency']}s, record ids {self.encoder.record_id_method.name}"
        )

        try:
            # Panes restored from a snapshot get their timers right away
            self._schedule_timer()
            self.queue_rcv.consume(callback_func=self.callback, stop_event=self.stop_event)
        finally:
            try:
                self._drain()
            finally:
                self.queue_rcv.close()
                self.client_factory.close()
                logging.info(f"Sink stopped. Counters: {self.counters.snapshot()}")

    def callback(self, ch, method, properties, body):
        """Buffers one delivery and returns the firing step to run once it is acked.

        Raising makes the consumer nack and requeue the delivery.
        """
        element = self.codec.decode(body)
        shard, _, ready = self.buffer_element(
            element,
            self._event_time(properties),
            source_id=getattr(properties, "message_id", None),
            redelivered=bool(getattr(method, "redelivered", False)),
        )
        return partial(self._after_delivery, shard, ready)

    def process_element(self, element, timestamp_millis, source_id=None, redelivered=False):
        """Buffer one element and fire its pane if it is full. Returns (shard, message)."""
        shard, message, ready = self.buffer_element(element, timestamp_millis, source_id, redelivered)
        self._after_delivery(shard, ready)
        return shard, message

    def buffer_element(self, element, timestamp_millis, source_id=None, redelivered=False):
        """Encode, buffer and snapshot one element. Returns (shard, message, ready)."""
        shard, message = self.encoder.encode(element, timestamp_millis, source_id)
        if redelivered:
            replayed = self._claim_replayed(message)
            if replayed is not None:
                logging.info(f"Redelivered element already restored in shard {replayed[0]}, not buffered again")
                return replayed[0], replayed[1], False
        elif self._replayable:
            self._replayable.clear()

        ready = self.grouper.add(message, shard)
        self.grouper.snapshot_key(shard)
        return shard, message, ready

    def fire_due(self):
        """Fire every pane whose trigger is due. Returns the shards that were attempted."""
        due = self.grouper.due_shards()
        for shard in due:
            self._fire(shard)
        return due

    def _after_delivery(self, shard, ready):
        if ready:
            self._fire(shard)
        self._schedule_timer()

    def _fire(self, shard):
        try:
            fired = self.grouper.fire(shard)
        except ClientLifecycleError:
            raise
        except Exception as e:
            self.counters.inc(FAILED_FIRINGS)
            logging.error(
                f"Publishing firing of shard {shard} failed, {self.grouper.pending(shard)} messages "
                f"kept for retry: {e}",
                exc_info=True,
            )
            return False
        logging.debug(f"Shard {shard} fired {fired} messages")
        return True

    def _on_timer(self):
        self._timer = None
        self._timer_deadline = None
        self.fire_due()
        self._schedule_timer()

    def _schedule_timer(self):
        deadline = self.grouper.next_deadline()
        if deadline is None or self.queue_rcv is None:
            return
        if self._timer is not None:
            if self._timer_deadline <= deadline:
                return
            self.queue_rcv.remove_timeout(self._timer)
        self._timer_deadline = deadline
        self._timer = self.queue_rcv.call_later(max(deadline - self._clock(), 0), self._on_timer)

    def _index_restored(self):
        replayable = defaultdict(list)
        for shard in self.grouper.shards():
            for message in self.grouper.buffered(shard):
                replayable[self._replay_key(message)].append((shard, message))
        return replayable

    def _claim_replayed(self, message):
        candidates = self._replayable.get(self._replay_key(message))
        if not candidates:
            return None
        return candidates.pop(0)

    def _replay_key(self, message):
        return message.payload, message.timestamp_millis

    def _drain(self):
        """Best-effort flush of every buffered pane on shutdown."""
        try:
            self.grouper.fire_all()
        except ClientLifecycleError:
            raise
        except Exception as e:
            logging.error(f"Could not drain buffered panes, they stay in the snapshot: {e}")
        finally:
            self.grouper.snapshot_all()

    def _event_time(self, properties):
        timestamp = getattr(properties, "timestamp", None)
        if timestamp is not None:
            return int(timestamp) * 1000
        return int(time.time() * 1000)

    def _handle_shutdown(self, _sig, _frame):
        logging.info("Graceful exit")
        self.stop()

    def stop(self):
        """End the sink and close the queue."""
        if self.stop_event.is_set():
            return
        logging.info("Stopping sink")
        self.stop_event.set()
