import pika
import logging
import threading

rabbit_logger = logging.getLogger("RabbitMQ")


class RabbitMQ:
    """Blocking consumer of one queue bound to an exchange.

    Deliveries are acked after the callback returns and nacked with requeue
    when it raises, so an element is only acknowledged once the sink has
    buffered it. If the callback returns a callable, it runs right after the
    ack.
    """

    def __init__(self, host, exchange, q_name, key, exc_type, prefetch_count=1, heartbeat=500):
        self.host = host
        self.exchange = exchange
        self.q_name = q_name
        self.key = key
        self.exc_type = exc_type
        self.prefetch_count = prefetch_count
        self.connection = pika.BlockingConnection(pika.ConnectionParameters(host=host, heartbeat=heartbeat))
        self.channel = self.create_channel()
        self.callback_func = None

    def create_channel(self):
        """Used to create a channel for the queue."""
        try:
            channel = self.connection.channel()
            channel.basic_qos(prefetch_count=self.prefetch_count)
            channel.exchange_declare(exchange=self.exchange, exchange_type=self.exc_type, durable=True)

            rabbit_logger.debug(f"Channel created with exchange {self.exchange} of type {self.exc_type}")

            return channel
        except Exception as e:
            rabbit_logger.error(f"Failed to create channel: {e}")
            if self.connection.is_open:
                self.connection.close()
                rabbit_logger.info("Connection closed")
            raise

    def call_later(self, delay, callback):
        """Run *callback* in the consuming thread after *delay* seconds."""
        return self.connection.call_later(delay, callback)

    def remove_timeout(self, timer_id):
        """Cancel a timer returned by call_later."""
        self.connection.remove_timeout(timer_id)

    def consume(self, callback_func, stop_event=None):
        """The callback function receives (ch, method, properties, body)."""
        try:
            self.channel.queue_declare(queue=self.q_name, durable=True)
            self.channel.queue_bind(exchange=self.exchange, queue=self.q_name, routing_key=self.key)

            self.callback_func = callback_func
            self.channel.basic_consume(queue=self.q_name, on_message_callback=self.callback, auto_ack=False)

            if stop_event is not None:
                def check_stop():
                    stop_event.wait()
                    try:
                        # Schedule stop_consuming in a thread-safe way
                        self.connection.add_callback_threadsafe(
                            lambda: self.channel.stop_consuming()
                        )
                        rabbit_logger.debug(f"Scheduled stop consuming in {self.q_name}")
                    except Exception as e:
                        rabbit_logger.error(f"Error scheduling stop for {self.q_name}: {e}")

                t = threading.Thread(target=check_stop, daemon=True)
                t.start()

            rabbit_logger.info(f"Waiting for messages in {self.q_name}, with routing_key {self.key}")
            self.channel.start_consuming()

        except KeyboardInterrupt:
            rabbit_logger.info("Exiting...")

        except Exception as e:
            rabbit_logger.error(f"Failed to consume from {self.q_name}: {e}")
            raise

    def callback(self, ch, method, properties, body):
        try:
            after_ack = self.callback_func(ch, method, properties, body)
        except Exception as e:
            logging.error(f"Failed to process message: {e}", exc_info=True)
            ch.basic_nack(delivery_tag=method.delivery_tag, requeue=True)
            return
        ch.basic_ack(delivery_tag=method.delivery_tag)
        if callable(after_ack):
            after_ack()

    def close(self):
        """Close the channel and the connection."""
        if self.channel.is_open:
            self.channel.close()
            rabbit_logger.info("Channel closed")
        if self.connection.is_open:
            self.connection.close()
            rabbit_logger.info("Connection closed")
