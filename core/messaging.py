import json
import logging
import os
import sys
import time
from typing import Any, Dict, Optional, Tuple

import pika
import pika.exceptions
import pika.exchange_type
from opentelemetry.propagate import inject

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)],
)
logging.getLogger("pika").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)

JOB_QUEUE = "reconciliation_jobs"
DLX_NAME = "dlx_reconciliation"
DEAD_LETTER_KEY = "dead_letter"
# a sync or recovery run blocks the consumer thread; heartbeats must outlive it
RABBITMQ_HEARTBEAT_SECONDS = int(os.getenv("RABBITMQ_HEARTBEAT_SECONDS", "600"))


class RabbitMQConnector:
    """Blocking connection to the job queue, with its dead-letter queue declared."""

    def __init__(
        self,
        host: Optional[str] = None,
        port: Optional[int] = None,
        queue_name: str = JOB_QUEUE,
    ) -> None:
        self.host = host or os.getenv("RABBITMQ_HOST", "localhost")
        self.port = port or int(os.getenv("RABBITMQ_PORT", "5672"))
        self.queue_name = queue_name
        self.dlq_name = f"{queue_name}.dlq"

        self.username = os.getenv("RABBITMQ_USER", "medipay")
        self.password = os.getenv("RABBITMQ_PASS", "medipay1234")

        self._connection: Optional[Any] = None
        self._channel: Optional[Any] = None

    def _open(self) -> Tuple[Any, Any]:
        connection = pika.BlockingConnection(
            pika.ConnectionParameters(
                host=self.host,
                port=self.port,
                credentials=pika.PlainCredentials(self.username, self.password),
                heartbeat=RABBITMQ_HEARTBEAT_SECONDS,
            )
        )
        channel = connection.channel()
        if channel is None:
            raise RuntimeError("Failed to create RabbitMQ channel")
        return connection, channel

    def _declare_topology(self, channel: Any) -> None:
        # --- DLX 設定 ---
        channel.exchange_declare(
            exchange=DLX_NAME,
            exchange_type=pika.exchange_type.ExchangeType.direct,
        )
        channel.queue_declare(queue=self.dlq_name, durable=True)
        channel.queue_bind(exchange=DLX_NAME, queue=self.dlq_name, routing_key=DEAD_LETTER_KEY)
        channel.queue_declare(
            queue=self.queue_name,
            durable=True,
            arguments={
                "x-dead-letter-exchange": DLX_NAME,
                "x-dead-letter-routing-key": DEAD_LETTER_KEY,
            },
        )

    def connect(self, retries: int = 5, delay: int = 2) -> Tuple[Any, Any]:
        for attempt in range(1, retries + 1):
            try:
                self._connection, self._channel = self._open()
                self._declare_topology(self._channel)
                logger.info(
                    f"✅ Connected to RabbitMQ as {self.username}. "
                    f"Queue {self.queue_name} -> DLQ {self.dlq_name}."
                )
                return self._connection, self._channel

            # must precede AMQPConnectionError, its base class
            except pika.exceptions.ProbableAuthenticationError:
                logger.error("❌ Authentication failed! Check your username/password.")
                sys.exit(1)
            except pika.exceptions.AMQPConnectionError as e:
                logger.warning(f"⚠️ Connection failed ({e}). Retry {attempt}/{retries}...")
                time.sleep(delay)

        logger.error("❌ Could not connect to RabbitMQ.")
        sys.exit(1)

    def close(self) -> None:
        if self._connection and not self._connection.is_closed:
            self._connection.close()


def publish_job(channel: Any, job: Dict[str, Any], queue_name: str = JOB_QUEUE) -> None:
    """Publish a persistent job message carrying the current trace context."""
    headers: Dict[str, Any] = {}
    inject(headers)
    channel.basic_publish(
        exchange="",
        routing_key=queue_name,
        body=json.dumps(job),
        properties=pika.BasicProperties(
            delivery_mode=2,  # 訊息持久化，RabbitMQ重啟不會消失
            content_type="application/json",
            headers=headers,
        ),
    )
    logger.info(f" [x] Published job {job}")
