# apps/worker/main.py
import json
import logging
import signal
from typing import Any

from core.database import engine
from core.messaging import RabbitMQConnector
from core.telemetry import instrument_app, setup_telemetry
from domains.payment.gateway import GatewayError
from domains.payment.jobs import run_job
from domains.payment.repair import PatientLinkRepairJob
from domains.payment.service import ReconciliationService

logger = logging.getLogger(__name__)

# 實例化 Service (Singleton)
reconciliation_service = ReconciliationService()
repair_job = PatientLinkRepairJob()


def process_message(ch: Any, method: Any, properties: Any, body: bytes) -> None:
    try:
        job = json.loads(body)
        logger.info(f" 📥 [Worker] Received job {job}")

        # the worker only schedules; jobs own their DB and gateway access
        result = run_job(job, service=reconciliation_service, repair=repair_job)

        if result is None:
            logger.info(f" ♻️ [Worker] Job {job.get('job')} already running. ACK.")
        else:
            summary = result.model_dump(exclude={"missing", "statusMismatches", "results"})
            logger.info(f" ✅ [Worker] Job {job.get('job')} done: {summary}")
        ch.basic_ack(delivery_tag=method.delivery_tag)

    except GatewayError as e:
        # the next scheduled run is the retry
        logger.warning(f" ⚠️ [Worker] PayOS unavailable, dropping this run: {e}")
        ch.basic_ack(delivery_tag=method.delivery_tag)
    except ValueError as e:
        # bad JSON or an unknown or malformed job: retrying cannot help
        logger.error(f" ❌ [Worker] Rejecting job: {e}")
        ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
    except Exception as e:
        logger.error(f" ❌ System Error: {e}")
        logger.warning(" 💀 Moving message to DLQ...")
        ch.basic_nack(delivery_tag=method.delivery_tag, requeue=False)


# -------------------------------------------------------------

should_run = True


def signal_handler(sig: int, frame: Any) -> None:
    global should_run
    logger.warning(f" 🛑 Received shutdown signal ({sig}). Stopping worker gracefully...")
    should_run = False


def main() -> None:
    setup_telemetry("medipay-worker")
    instrument_app(None, engine, messaging=True)

    connector = RabbitMQConnector()
    connection, channel = connector.connect()
    channel.basic_qos(prefetch_count=1)

    signal.signal(signal.SIGINT, signal_handler)  # Ctrl+C
    signal.signal(signal.SIGTERM, signal_handler)  # Docker stop

    logger.info(" [*] Worker started. Press CTRL+C to exit.")

    # consume generator so the loop can observe should_run between messages
    for method, properties, body in channel.consume(
        queue=connector.queue_name, inactivity_timeout=1
    ):
        if not should_run:
            break
        if method is None:
            continue
        process_message(channel, method, properties, body)

    logger.info(" 🧹 Closing connections...")
    try:
        if channel.is_open:
            channel.cancel()
        connector.close()
    except Exception:
        logger.info(" 🧹 Connection already closed.")
    logger.info(" 👋 Bye.")


if __name__ == "__main__":
    main()
