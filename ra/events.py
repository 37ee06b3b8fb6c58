import json
import logging
import threading
from typing import Optional

import pika
import pika.exceptions

from ra import database
from ra.errors import CARejected, CATransient, InvalidTransition, NotFound, StorageUnavailable

logger = logging.getLogger("ra-service.events")

EXCHANGE = "ra_events"
ROUTING_PREFIX = "enrollment.events"
APPROVED_ROUTING_KEY = ROUTING_PREFIX + ".approved"
ISSUANCE_QUEUE = "ra.issuance"

# seconds between reconnect attempts, doubled up to the maximum while the broker is down
RECONNECT_DELAY = 5.0
MAX_RECONNECT_DELAY = 60.0


def publish_event(rabbitmq_url: str, routing_key: str, event: dict):
    params = pika.URLParameters(rabbitmq_url)
    connection = pika.BlockingConnection(params)
    try:
        channel = connection.channel()
        channel.exchange_declare(exchange=EXCHANGE, exchange_type="topic", durable=True)
        body = json.dumps(event)
        channel.basic_publish(
            exchange=EXCHANGE,
            routing_key=routing_key,
            body=body,
            properties=pika.BasicProperties(content_type="application/json", delivery_mode=2),
        )
    finally:
        connection.close()


def enrollment_event(etype: str, enrollment):
    """Routing key and body of a lifecycle event for ``enrollment``."""
    event = {
        "type": etype,
        "payload": {
            "enrollment_id": enrollment.id,
            "common_name": enrollment.common_name,
            "status": enrollment.status,
        },
    }
    return "%s.%s" % (ROUTING_PREFIX, enrollment.status), event


def publish_enrollment_event(rabbitmq_url: str, routing_key: str, event: dict):
    """Best-effort notification; the issuance sweep covers any lost event."""
    try:
        publish_event(rabbitmq_url, routing_key, event)
    except pika.exceptions.AMQPError as e:
        logger.warning("Could not publish %s for enrollment id=%s: %r", event["type"], event["payload"]["enrollment_id"], e)


def issue(service, enrollment_id: str) -> bool:
    """Run one issuance attempt for the worker. Returns True once issued.

    Failures the next sweep or an operator resolve are logged, not raised.
    """
    try:
        service.request_issuance(enrollment_id)
        return True
    except CATransient as e:
        logger.warning("Issuance of enrollment id=%s will be retried: %s", enrollment_id, e)
    except CARejected as e:
        logger.error("CA rejected enrollment id=%s, operator action needed: %s", enrollment_id, e)
    except (InvalidTransition, NotFound) as e:
        logger.info("Skipping issuance of enrollment id=%s: %s", enrollment_id, e)
    return False


def process_enrollment_event(body, service) -> bool:
    if not isinstance(body, dict):
        logger.warning("Ignoring event that is not an object: %r", body)
        return False
    etype = body.get("type")
    payload = body.get("payload", {})
    if etype != "EnrollmentApproved":
        return False
    if not isinstance(payload, dict) or not payload.get("enrollment_id"):
        logger.warning("EnrollmentApproved event without enrollment_id: %s", body)
        return False
    return issue(service, payload["enrollment_id"])


def sweep_issuance(service, limit: Optional[int] = None) -> int:
    """Retry up to ``limit`` approved or retryable failed enrollments once. Returns the number issued."""
    issued = 0
    for enrollment in service.pending_issuance(limit):
        if issue(service, enrollment.id):
            issued += 1
    if issued:
        logger.info("Issuance sweep issued %d enrollment(s)", issued)
    return issued


def _with_service(service_factory, fn, *args):
    db = database.SessionLocal()
    try:
        return fn(*args, service_factory(db))
    finally:
        db.close()


def _handle_delivery(ch, method, body, service_factory):
    try:
        event = json.loads(body)
        _with_service(service_factory, process_enrollment_event, event)
    except StorageUnavailable as e:
        # leave the event for another delivery once the store is back
        logger.warning("Storage unavailable while processing event: %s", e)
        ch.basic_nack(delivery_tag=method.delivery_tag, requeue=True)
        return
    except Exception:
        logger.exception("Dropping enrollment event %r", body[:200])
        ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
        return
    ch.basic_ack(delivery_tag=method.delivery_tag)


def _consume(connection, service_factory):
    channel = connection.channel()
    channel.exchange_declare(exchange=EXCHANGE, exchange_type="topic", durable=True)
    result = channel.queue_declare(queue=ISSUANCE_QUEUE, durable=True)
    queue_name = result.method.queue
    channel.queue_bind(exchange=EXCHANGE, queue=queue_name, routing_key=APPROVED_ROUTING_KEY)
    channel.basic_qos(prefetch_count=1)

    def callback(ch, method, properties, body):
        _handle_delivery(ch, method, body, service_factory)

    channel.basic_consume(queue=queue_name, on_message_callback=callback, auto_ack=False)
    logger.info("Issuance worker waiting for approval events...")
    channel.start_consuming()


def _consumer_thread(rabbitmq_url: str, service_factory, stop: threading.Event,
                     reconnect_delay: float = RECONNECT_DELAY):
    params = pika.URLParameters(rabbitmq_url)
    delay = reconnect_delay
    while not stop.is_set():
        try:
            connection = pika.BlockingConnection(params)
        except pika.exceptions.AMQPError as e:
            logger.warning("Issuance worker cannot reach RabbitMQ, retrying in %.0fs: %r", delay, e)
            stop.wait(delay)
            delay = min(delay * 2, MAX_RECONNECT_DELAY)
            continue
        delay = reconnect_delay
        try:
            _consume(connection, service_factory)
        except pika.exceptions.AMQPError as e:
            logger.error("Issuance worker lost its connection: %r", e)
        except Exception:
            logger.exception("Issuance worker failed, reconnecting")
        finally:
            if connection.is_open:
                connection.close()
        stop.wait(delay)
    logger.info("Issuance worker stopped")


def _sweeper_thread(service_factory, interval: float, batch: int, stop: threading.Event):
    # runs apart from the consumer so it keeps going while the broker is down
    while not stop.wait(interval):
        try:
            _with_service(service_factory, lambda service: sweep_issuance(service, batch))
        except Exception:
            logger.exception("Issuance sweep failed")


_consumer = None
_sweeper = None
_stop = threading.Event()


def start_consumer(rabbitmq_url: str, service_factory, sweep_interval: float = 60.0, sweep_batch: int = 10):
    global _consumer, _sweeper
    _stop.clear()
    if _consumer is None or not _consumer.is_alive():
        _consumer = threading.Thread(
            target=_consumer_thread,
            args=(rabbitmq_url, service_factory, _stop),
            name="issuance-worker",
            daemon=True,
        )
        _consumer.start()
    if _sweeper is None or not _sweeper.is_alive():
        _sweeper = threading.Thread(
            target=_sweeper_thread,
            args=(service_factory, sweep_interval, sweep_batch, _stop),
            name="issuance-sweeper",
            daemon=True,
        )
        _sweeper.start()


def stop_consumer():
    _stop.set()
