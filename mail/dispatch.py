"""Job dispatch: one Celery queue per job kind, each with its own policy.

A worker pool is started per queue (see the ``run_sync_worker`` command), so
concurrency and rate limits are tuned per kind and no handler ever has to
check whether a job is meant for it.
"""
import logging
from dataclasses import dataclass, replace
from typing import Optional

from celery import current_app
from django.conf import settings

from mail.exceptions import DispatchError, TransientRemoteError
from mail.models import SyncKind

logger = logging.getLogger(__name__)

SYNC_LABELS = "sync_labels"
SYNC_INITIAL = "sync_initial"
SYNC_INCREMENTAL = "sync_incremental"
DETAIL_BATCH = "detail_batch"

JOB_KINDS = (SYNC_LABELS, SYNC_INITIAL, SYNC_INCREMENTAL, DETAIL_BATCH)

# Job kind that runs each sync kind
SYNC_JOB_FOR_KIND = {
    SyncKind.LABELS: SYNC_LABELS,
    SyncKind.INITIAL: SYNC_INITIAL,
    SyncKind.INCREMENTAL: SYNC_INCREMENTAL,
}

PAYLOAD_FIELDS = {
    SYNC_LABELS: ("account_id",),
    SYNC_INITIAL: ("account_id",),
    SYNC_INCREMENTAL: ("account_id",),
    DETAIL_BATCH: ("account_id", "batch_size", "sync_kind", "progress_id"),
}

# Broker publish retries before enqueue gives up
PUBLISH_RETRY_POLICY = {
    "max_retries": 3,
    "interval_start": 0,
    "interval_step": 0.5,
    "interval_max": 2,
}


@dataclass(frozen=True)
class JobPolicy:
    queue: str
    concurrency: int = 1
    rate_limit: Optional[str] = None
    max_retries: int = 5
    retry_backoff: int = 2
    retry_backoff_max: int = 600
    time_limit: int = 600

    @property
    def soft_time_limit(self) -> int:
        return max(self.time_limit - 30, 1)

    def task_options(self) -> dict:
        """Keyword arguments for the Celery task decorator."""
        return {
            "queue": self.queue,
            "rate_limit": self.rate_limit,
            "max_retries": self.max_retries,
            "autoretry_for": (TransientRemoteError,),
            "retry_backoff": self.retry_backoff,
            "retry_backoff_max": self.retry_backoff_max,
            "retry_jitter": True,
            "acks_late": True,
            "reject_on_worker_lost": True,
            "time_limit": self.time_limit,
            "soft_time_limit": self.soft_time_limit,
        }

    def worker_argv(self, kind: str, loglevel: str = "INFO") -> list:
        return [
            "worker",
            "--queues",
            self.queue,
            "--concurrency",
            str(self.concurrency),
            "--hostname",
            f"{kind}@%h",
            "--loglevel",
            loglevel,
        ]


def task_name(kind: str) -> str:
    return f"mail.tasks.{kind}"


def get_policy(kind: str) -> JobPolicy:
    if kind not in JOB_KINDS:
        raise DispatchError(f"Unknown job kind: {kind}")
    overrides = getattr(settings, "MAIL_SYNC_JOB_POLICIES", {}).get(kind, {})
    return replace(JobPolicy(queue=f"mail.{kind}"), **overrides)


def validate_payload(kind: str, payload: dict) -> dict:
    expected = PAYLOAD_FIELDS.get(kind)
    if expected is None:
        raise DispatchError(f"Unknown job kind: {kind}")
    if set(payload) != set(expected):
        raise DispatchError(
            f"{kind} payload must have fields {sorted(expected)}, got {sorted(payload)}"
        )
    for field in ("account_id", "batch_size", "progress_id"):
        if field in payload:
            value = payload[field]
            if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
                raise DispatchError(f"{kind} payload field {field} must be a positive integer")
    if "sync_kind" in payload and payload["sync_kind"] not in (SyncKind.INITIAL, SyncKind.INCREMENTAL):
        raise DispatchError(f"{kind} payload sync_kind must be initial or incremental")
    return {field: payload[field] for field in expected}


def enqueue(kind: str, **payload) -> str:
    """Publish one job and return its task id once the broker has accepted it."""
    payload = validate_payload(kind, payload)
    policy = get_policy(kind)
    try:
        result = current_app.send_task(
            task_name(kind),
            kwargs=payload,
            queue=policy.queue,
            retry=True,
            retry_policy=PUBLISH_RETRY_POLICY,
        )
    except Exception as e:
        logger.exception("Failed to enqueue %s payload=%s", kind, payload)
        raise DispatchError(f"Could not enqueue {kind}: {e}") from e
    logger.info("Enqueued %s task_id=%s payload=%s", kind, result.id, payload)
    return result.id


def enqueue_sync(sync_kind: str, account_id: int) -> str:
    return enqueue(SYNC_JOB_FOR_KIND[sync_kind], account_id=account_id)


def default_batch_size(sync_kind: str) -> int:
    if sync_kind == SyncKind.INITIAL:
        return settings.MAIL_SYNC_INITIAL_BATCH_SIZE
    return settings.MAIL_SYNC_INCREMENTAL_BATCH_SIZE


def enqueue_detail_batch(account_id: int, sync_kind: str, progress_id: int, batch_size: Optional[int] = None) -> str:
    return enqueue(
        DETAIL_BATCH,
        account_id=account_id,
        batch_size=batch_size or default_batch_size(sync_kind),
        sync_kind=str(sync_kind),
        progress_id=progress_id,
    )
