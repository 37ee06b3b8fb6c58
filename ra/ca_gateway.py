# ra/ca_gateway.py

import abc
import json
import logging
import ssl
import time
import uuid
from dataclasses import dataclass
from typing import Optional

import pika
import pika.exceptions

from ra.errors import CARejected, CATransient

logger = logging.getLogger("ra-service.ca")


@dataclass(frozen=True)
class SignedCertificate:
    certificate_pem: str
    serial: str


class CAGateway(abc.ABC):
    """Sign / fetch / revoke capability of a certificate authority.

    Every method raises :class:`~ra.errors.CATransient` for network failures
    and timeouts, and :class:`~ra.errors.CARejected` when the CA refuses.
    """

    @abc.abstractmethod
    def sign(self, csr_pem: str, validity_days: int, timeout: Optional[float] = None) -> SignedCertificate:
        ...

    @abc.abstractmethod
    def fetch(self, serial: str, timeout: Optional[float] = None) -> str:
        ...

    @abc.abstractmethod
    def revoke(self, serial: str, reason: str, timeout: Optional[float] = None) -> None:
        ...

    def close(self):
        pass


def build_ssl_options(host: str, ca_cert: Optional[str], cert: Optional[str], key: Optional[str]):
    """Mutual TLS options for the CA channel, or None when no CA bundle is configured."""
    if not ca_cert:
        return None
    context = ssl.create_default_context(cafile=ca_cert)
    context.minimum_version = ssl.TLSVersion.TLSv1_3
    if cert:
        context.load_cert_chain(cert, key)
    return pika.SSLOptions(context, server_hostname=host)


class AMQPCAGateway(CAGateway):
    def __init__(self, amqp_url: str, queue: str = "ca.rpc", timeout: float = 30.0,
                 ssl_options: Optional[pika.SSLOptions] = None):
        self.params = pika.URLParameters(amqp_url)
        if ssl_options is not None:
            self.params.ssl_options = ssl_options
        self.queue = queue
        self.timeout = timeout

    def _call(self, method: str, payload: dict, timeout: Optional[float]) -> dict:
        timeout = self.timeout if timeout is None else min(timeout, self.timeout)
        if timeout <= 0:
            raise CATransient("no time left for CA %s" % method)
        correlation_id = str(uuid.uuid4())
        response = {}
        try:
            connection = pika.BlockingConnection(self.params)
        except pika.exceptions.AMQPError as e:
            raise CATransient("cannot reach CA service: %r" % e) from e
        try:
            channel = connection.channel()
            result = channel.queue_declare(queue="", exclusive=True, auto_delete=True)
            reply_queue = result.method.queue

            def on_reply(ch, deliver, properties, body):
                if properties.correlation_id == correlation_id:
                    response["body"] = body

            channel.basic_consume(queue=reply_queue, on_message_callback=on_reply, auto_ack=True)
            channel.basic_publish(
                exchange="",
                routing_key=self.queue,
                properties=pika.BasicProperties(
                    reply_to=reply_queue,
                    correlation_id=correlation_id,
                    content_type="application/json",
                    expiration=str(int(timeout * 1000)),
                ),
                body=json.dumps(dict(payload, method=method)),
            )
            stop_at = time.monotonic() + timeout
            while "body" not in response:
                left = stop_at - time.monotonic()
                if left <= 0:
                    raise CATransient("CA %s timed out after %.1fs" % (method, timeout))
                connection.process_data_events(time_limit=left)
        except pika.exceptions.AMQPError as e:
            raise CATransient("CA %s failed: %r" % (method, e)) from e
        finally:
            if connection.is_open:
                connection.close()

        try:
            reply = json.loads(response["body"])
        except ValueError as e:
            raise CATransient("unreadable CA reply to %s" % method) from e
        # {"ok": true, ...} or {"ok": false, "error": "...", "retryable": bool}
        if not isinstance(reply, dict):
            raise CATransient("malformed CA reply to %s" % method)
        if not reply.get("ok"):
            detail = reply.get("error") or "unspecified CA error"
            if reply.get("retryable"):
                raise CATransient("CA %s failed: %s" % (method, detail))
            raise CARejected("CA refused %s: %s" % (method, detail))
        return reply

    def sign(self, csr_pem, validity_days, timeout=None):
        logger.info("Signing CSR via CA service validity_days=%s", validity_days)
        reply = self._call("sign", {"csr_pem": csr_pem, "validity_days": validity_days}, timeout)
        try:
            return SignedCertificate(certificate_pem=reply["certificate_pem"], serial=str(reply["serial"]))
        except KeyError as e:
            raise CATransient("incomplete CA sign reply, missing %s" % e) from e

    def fetch(self, serial, timeout=None):
        reply = self._call("fetch", {"serial": serial}, timeout)
        try:
            return reply["certificate_pem"]
        except KeyError as e:
            raise CATransient("incomplete CA fetch reply") from e

    def revoke(self, serial, reason, timeout=None):
        logger.info("Revoking certificate serial=%s via CA service", serial)
        self._call("revoke", {"serial": serial, "reason": reason}, timeout)
