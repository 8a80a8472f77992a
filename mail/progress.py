"""Durable checkpoints for sync runs (one SyncProgress row per run).

Every transition goes through a conditional UPDATE on the row's status, so a
redelivered job can never complete or fail a run twice, and counters move with
F() expressions instead of read-modify-write.
"""
import logging
from datetime import timedelta
from typing import Optional

from django.db import transaction
from django.db.models import F
from django.utils import timezone

from accounts.models import Account
from mail.models import ACTIVE_STATUSES, SyncProgress, SyncStatus

logger = logging.getLogger(__name__)

SUPERSEDED_MESSAGE = "Superseded by a new run"
ERROR_MESSAGE_MAX_LENGTH = 2000


def start_run(account_id: int, kind: str, **fields) -> SyncProgress:
    """Retire any non-terminal run of ``kind`` and create a fresh pending one."""
    now = timezone.now()
    with transaction.atomic():
        # Serialize run starts for one account on the account row
        Account.objects.select_for_update().get(pk=account_id)
        retired = SyncProgress.objects.filter(
            account_id=account_id, kind=kind, status__in=ACTIVE_STATUSES
        ).update(
            status=SyncStatus.FAILED,
            error_message=SUPERSEDED_MESSAGE,
            completed_at=now,
            updated_at=now,
        )
        progress = SyncProgress.objects.create(
            account_id=account_id,
            kind=kind,
            status=SyncStatus.PENDING,
            started_at=now,
            **fields,
        )
    if retired:
        logger.info(
            "Retired %s active %s run(s) for account_id=%s", retired, kind, account_id
        )
    return progress


def active_run(account_id: int, kind: str, stale_after_seconds: Optional[int] = None) -> Optional[SyncProgress]:
    """Return the non-terminal run for (account, kind), ignoring rows not touched
    for ``stale_after_seconds``."""
    qs = SyncProgress.objects.filter(
        account_id=account_id, kind=kind, status__in=ACTIVE_STATUSES
    )
    if stale_after_seconds:
        qs = qs.filter(updated_at__gte=timezone.now() - timedelta(seconds=stale_after_seconds))
    return qs.first()


def latest_runs(account_id: int):
    """Most recent run of each kind, for status reporting."""
    runs = {}
    for progress in SyncProgress.objects.filter(account_id=account_id).order_by("-created_at", "-id"):
        runs.setdefault(progress.kind, progress)
    return runs


def set_cursor(progress_id: int, cursor: Optional[str], num_total: int) -> None:
    """Persist the page cursor and running total after a page has been written."""
    SyncProgress.objects.filter(pk=progress_id).update(
        cursor=cursor,
        num_total=num_total,
        updated_at=timezone.now(),
    )


def mark_in_progress(progress_id: int, **fields) -> bool:
    updated = SyncProgress.objects.filter(pk=progress_id, status__in=ACTIVE_STATUSES).update(
        status=SyncStatus.IN_PROGRESS, updated_at=timezone.now(), **fields
    )
    return bool(updated)


def record_batch(progress_id: int, processed: int, remaining_batches: int) -> None:
    """Count one finished detail batch. ``batches_total`` becomes the batches done
    so far plus the batches the remaining stubs still need."""
    SyncProgress.objects.filter(pk=progress_id).update(
        num_processed=F("num_processed") + processed,
        batches_completed=F("batches_completed") + 1,
        batches_total=F("batches_completed") + 1 + remaining_batches,
        updated_at=timezone.now(),
    )


def mark_completed(progress_id: int) -> bool:
    """Complete a run. Returns False if the run was already terminal."""
    now = timezone.now()
    updated = SyncProgress.objects.filter(pk=progress_id, status__in=ACTIVE_STATUSES).update(
        status=SyncStatus.COMPLETED, completed_at=now, updated_at=now
    )
    if updated:
        logger.info("Sync progress %s completed", progress_id)
    return bool(updated)


def mark_failed(progress_id: int, error_message: str) -> bool:
    """Fail a run. Returns False if the run was already terminal."""
    now = timezone.now()
    updated = SyncProgress.objects.filter(pk=progress_id, status__in=ACTIVE_STATUSES).update(
        status=SyncStatus.FAILED,
        error_message=(error_message or "")[:ERROR_MESSAGE_MAX_LENGTH],
        completed_at=now,
        updated_at=now,
    )
    if updated:
        logger.warning("Sync progress %s failed: %s", progress_id, error_message)
    return bool(updated)


def fail_active_run(account_id: int, kind: str, error_message: str) -> Optional[int]:
    """Fail whatever run of ``kind`` is active for the account; returns its id."""
    progress = active_run(account_id, kind)
    if progress is None:
        return None
    mark_failed(progress.pk, error_message)
    return progress.pk
