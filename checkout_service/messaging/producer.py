import json
import logging

import pika

logger = logging.getLogger(__name__)


class EventPublisher:
    """
    Publishes order events to a RabbitMQ topic exchange.
    A connection is opened per publish: pika's BlockingConnection is not
    thread-safe and requests are served from a threadpool.
    """

    def __init__(self, url: str, exchange_name: str = "events", exchange_type: str = "topic"):
        self.parameters = pika.URLParameters(url)
        self.exchange_name = exchange_name
        self.exchange_type = exchange_type

    def publish(self, routing_key: str, message: dict) -> None:
        """
        Publishes a message to the exchange with a specific routing key.

        Args:
            routing_key (str): The topic key (e.g., 'order.paid', 'order.failed').
            message (dict): The data payload to send.
        """
        connection = pika.BlockingConnection(self.parameters)
        try:
            channel = connection.channel()
            # Declare the exchange (durable ensures it survives restarts)
            channel.exchange_declare(exchange=self.exchange_name, exchange_type=self.exchange_type, durable=True)
            channel.basic_publish(
                exchange=self.exchange_name,
                routing_key=routing_key,
                body=json.dumps(message),
                properties=pika.BasicProperties(
                    delivery_mode=2,  # Make message persistent
                    content_type="application/json",
                ),
            )
            logger.info("Sent event '%s': %s", routing_key, message)
        finally:
            connection.close()
