import json
import logging

import pika

logger = logging.getLogger("coursepay.events")

EXCHANGE = "coursepay_events"


class NullPublisher:
    """Used when no broker is configured; events are only logged."""

    def publish(self, routing_key: str, event: dict):
        logger.info("event %s (no broker configured): %s", routing_key, event.get("type"))


class RabbitMQPublisher:
    def __init__(self, rabbitmq_url: str, exchange: str = EXCHANGE):
        self.rabbitmq_url = rabbitmq_url
        self.exchange = exchange

    def publish(self, routing_key: str, event: dict):
        """Publish after commit. A broker failure is logged, never raised:
        the state change it describes is already committed."""
        connection = None
        try:
            params = pika.URLParameters(self.rabbitmq_url)
            connection = pika.BlockingConnection(params)
            channel = connection.channel()
            channel.exchange_declare(exchange=self.exchange, exchange_type="topic", durable=True)
            body = json.dumps(event, default=str)
            channel.basic_publish(
                exchange=self.exchange,
                routing_key=routing_key,
                body=body,
                properties=pika.BasicProperties(content_type="application/json", delivery_mode=2),
            )
        except Exception:
            logger.exception("Error publishing event %s", routing_key)
        finally:
            if connection is not None and connection.is_open:
                connection.close()


def build_publisher(settings):
    if settings.rabbitmq_url:
        return RabbitMQPublisher(settings.rabbitmq_url, settings.exchange)
    return NullPublisher()


def enrollment_event(kind: str, enrollment) -> dict:
    return {
        "type": kind,
        "payload": {
            "enrollment_id": enrollment.id,
            "student_id": enrollment.student_id,
            "course_id": enrollment.course_id,
            "status": enrollment.status.value,
            "overall_progress": enrollment.overall_progress,
        },
    }


def payment_event(kind: str, payment, enrollment_id=None) -> dict:
    return {
        "type": kind,
        "payload": {
            "payment_id": payment.id,
            "enrollment_id": enrollment_id,
            "student_id": payment.student_id,
            "course_id": payment.course_id,
            "status": payment.payment_status.value,
            "amount": str(payment.amount),
            "currency": payment.currency,
        },
    }
