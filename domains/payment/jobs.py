import logging
from typing import Any, Dict, Optional

from pydantic import BaseModel

from core.cache import job_lock
from domains.payment.repair import PatientLinkRepairJob
from domains.payment.service import ReconciliationService

logger = logging.getLogger(__name__)

JOB_SYNC = "sync"
JOB_RECOVERY = "recovery"
JOB_REPAIR = "repair"
DEFAULT_RECOVERY_HOURS = 24


class UnknownJobError(ValueError):
    pass


class InvalidJobError(ValueError):
    pass


def run_job(
    job: Dict[str, Any],
    service: Optional[ReconciliationService] = None,
    repair: Optional[PatientLinkRepairJob] = None,
) -> Optional[BaseModel]:
    """
    Execute one reconciliation job message.
    Returns the job result, or None when another run of the same job holds the lock.
    Read-only recovery checks run without the lock.
    """
    name = job.get("job")
    if name not in (JOB_SYNC, JOB_RECOVERY, JOB_REPAIR):
        raise UnknownJobError(f"unknown job {name!r}")

    action = job.get("action", "check")
    if name == JOB_RECOVERY and action not in ("check", "recover"):
        raise UnknownJobError(f"unknown recovery action {action!r}")

    order_codes = job.get("order_codes")
    if order_codes is not None and (
        not isinstance(order_codes, list)
        or not all(isinstance(code, str) for code in order_codes)
    ):
        raise InvalidJobError(f"order_codes must be a list of strings, got {order_codes!r}")

    if name == JOB_RECOVERY and action == "check":
        service = service or ReconciliationService()
        return service.check_window(int(job.get("hours", DEFAULT_RECOVERY_HOURS)))

    with job_lock(name) as acquired:
        if not acquired:
            return None

        if name == JOB_SYNC:
            service = service or ReconciliationService()
            return service.sync_pending(order_codes)
        if name == JOB_RECOVERY:
            service = service or ReconciliationService()
            return service.recover_window(int(job.get("hours", DEFAULT_RECOVERY_HOURS)))

        repair = repair or PatientLinkRepairJob()
        return repair.run(job.get("limit"))
