# apps/scheduler/main.py
import logging
import os
import signal
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from redis import Redis

from core.cache import get_redis_client
from core.messaging import RabbitMQConnector, publish_job
from core.telemetry import instrument_app, setup_telemetry

logger = logging.getLogger(__name__)

SYNC_INTERVAL_SECONDS = int(os.getenv("SYNC_INTERVAL_SECONDS", "30"))
RECOVERY_INTERVAL_SECONDS = int(os.getenv("RECOVERY_INTERVAL_SECONDS", "3600"))
RECOVERY_WINDOW_HOURS = int(os.getenv("RECOVERY_WINDOW_HOURS", "6"))
REPAIR_INTERVAL_SECONDS = int(os.getenv("REPAIR_INTERVAL_SECONDS", "3600"))
TICK_SECONDS = 1


@dataclass
class Schedule:
    name: str
    interval: int
    job: Dict[str, Any]


def default_schedules() -> List[Schedule]:
    return [
        Schedule("sync", SYNC_INTERVAL_SECONDS, {"job": "sync"}),
        Schedule(
            "recovery",
            RECOVERY_INTERVAL_SECONDS,
            {"job": "recovery", "action": "recover", "hours": RECOVERY_WINDOW_HOURS},
        ),
        Schedule("repair", REPAIR_INTERVAL_SECONDS, {"job": "repair"}),
    ]


def claim_slot(client: "Redis[str]", schedule: Schedule) -> bool:
    """
    One publish per interval across restarts and replicas: the slot key lives
    in Redis for `interval` seconds.
    """
    return bool(
        client.set(f"schedule:{schedule.name}", str(int(time.time())), nx=True, ex=schedule.interval)
    )


def tick(channel: Any, client: "Redis[str]", schedules: List[Schedule]) -> int:
    published = 0
    for schedule in schedules:
        if claim_slot(client, schedule):
            publish_job(channel, schedule.job)
            published += 1
    return published


# -------------------------------------------------------------

should_run = True


def signal_handler(sig: int, frame: Any) -> None:
    global should_run
    logger.warning(f" 🛑 Received shutdown signal ({sig}). Stopping scheduler...")
    should_run = False


def main(schedules: Optional[List[Schedule]] = None) -> None:
    setup_telemetry("medipay-scheduler")
    instrument_app(None, messaging=True)

    schedules = schedules or default_schedules()
    client = get_redis_client()
    connector = RabbitMQConnector()
    connection, channel = connector.connect()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    logger.info(
        " [*] Scheduler started: "
        + ", ".join(f"{s.name} every {s.interval}s" for s in schedules)
    )

    while should_run:
        tick(channel, client, schedules)
        # keeps the blocking connection's heartbeats flowing
        connection.process_data_events(time_limit=TICK_SECONDS)

    logger.info(" 🧹 Closing connections...")
    connector.close()
    logger.info(" 👋 Bye.")


if __name__ == "__main__":
    main()
