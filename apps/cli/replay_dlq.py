import logging

# 確保 python path 抓得到 core
import os
import sys
from typing import Any

sys.path.insert(0, os.getcwd())

from core.messaging import RabbitMQConnector  # noqa: E402

logging.basicConfig(
    level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s"
)
logger = logging.getLogger(__name__)

DEATH_HEADERS = (
    "x-death",
    "x-first-death-exchange",
    "x-first-death-queue",
    "x-first-death-reason",
)


def replay(channel: Any, dlq_name: str, main_queue: str) -> int:
    """Move every dead-lettered job back to the main queue. Returns the count."""
    replayed_count = 0

    # basic_get one message at a time; ACK only after the republish succeeded
    while True:
        method, properties, body = channel.basic_get(queue=dlq_name)
        if method is None:
            break

        try:
            if properties.headers:
                for header in DEATH_HEADERS:
                    properties.headers.pop(header, None)

            channel.basic_publish(
                exchange="", routing_key=main_queue, body=body, properties=properties
            )
            channel.basic_ack(delivery_tag=method.delivery_tag)
            replayed_count += 1
            logger.info(f" 🔄 Replayed job {replayed_count}: {body!r}")

        except Exception as e:
            logger.error(f" ❌ Error replaying job: {e}")
            # leave it in the DLQ
            break

    return replayed_count


def main() -> None:
    connector = RabbitMQConnector()
    try:
        connection, channel = connector.connect()
    except Exception as e:
        logger.error(f"Cannot connect to RabbitMQ: {e}")
        return

    queue_state = channel.queue_declare(queue=connector.dlq_name, durable=True, passive=True)
    message_count = queue_state.method.message_count

    if message_count == 0:
        logger.info(" ✅ DLQ is empty. Nothing to replay.")
        connector.close()
        return

    logger.info(
        f" ♻️ Found {message_count} jobs in {connector.dlq_name}. Starting replay..."
    )
    replayed_count = replay(channel, connector.dlq_name, connector.queue_name)
    logger.info(f" 🎉 Successfully replayed {replayed_count} jobs.")
    connector.close()


if __name__ == "__main__":
    main()
