import logging

from celery import Task, shared_task

from mail import coordinator
from mail import progress as sync_progress
from mail.dispatch import (
    DETAIL_BATCH,
    SYNC_INCREMENTAL,
    SYNC_INITIAL,
    SYNC_LABELS,
    get_policy,
    task_name,
)
from mail.exceptions import SyncPreconditionError
from mail.incremental_sync import IncrementalSyncEngine
from mail.initial_sync import InitialSyncEngine
from mail.label_sync import LabelSyncEngine
from mail.message_detail import MessageDetailEngine
from mail.models import SyncKind
from mail.sync_status import clear_last_sync_error, set_last_sync_error

logger = logging.getLogger(__name__)

SYNC_KIND_FOR_JOB = {
    SYNC_LABELS: SyncKind.LABELS,
    SYNC_INITIAL: SyncKind.INITIAL,
    SYNC_INCREMENTAL: SyncKind.INCREMENTAL,
}


class SyncJobTask(Task):
    """Base for sync jobs. Once a job has failed for good (retries exhausted or
    a non-retryable error) its progress row is marked failed."""

    abstract = True
    job_kind = None

    def on_failure(self, exc, task_id, args, kwargs, einfo):
        account_id = kwargs.get("account_id")
        message = f"{type(exc).__name__}: {exc}"
        logger.error(
            "%s failed for good task_id=%s account_id=%s: %s",
            self.name,
            task_id,
            account_id,
            message,
        )
        if account_id is None:
            return
        if isinstance(exc, SyncPreconditionError):
            # Raised before a run is started, or after the engine failed its own row
            pass
        elif self.job_kind == DETAIL_BATCH:
            progress_id = kwargs.get("progress_id")
            if progress_id:
                sync_progress.mark_failed(progress_id, message)
        elif self.job_kind in SYNC_KIND_FOR_JOB:
            sync_progress.fail_active_run(account_id, SYNC_KIND_FOR_JOB[self.job_kind], message)
        set_last_sync_error(account_id, message)


@shared_task(
    bind=True,
    base=SyncJobTask,
    job_kind=SYNC_LABELS,
    name=task_name(SYNC_LABELS),
    **get_policy(SYNC_LABELS).task_options(),
)
def sync_labels(self, account_id: int):
    logger.info("sync_labels starting account_id=%s attempt=%s", account_id, self.request.retries)
    result = LabelSyncEngine().run(account_id)
    clear_last_sync_error(account_id)
    return result


@shared_task(
    bind=True,
    base=SyncJobTask,
    job_kind=SYNC_INITIAL,
    name=task_name(SYNC_INITIAL),
    **get_policy(SYNC_INITIAL).task_options(),
)
def sync_initial(self, account_id: int):
    logger.info("sync_initial starting account_id=%s attempt=%s", account_id, self.request.retries)
    result = InitialSyncEngine().run(account_id)
    clear_last_sync_error(account_id)
    return result


@shared_task(
    bind=True,
    base=SyncJobTask,
    job_kind=SYNC_INCREMENTAL,
    name=task_name(SYNC_INCREMENTAL),
    **get_policy(SYNC_INCREMENTAL).task_options(),
)
def sync_incremental(self, account_id: int):
    logger.info("sync_incremental starting account_id=%s attempt=%s", account_id, self.request.retries)
    result = IncrementalSyncEngine().run(account_id)
    clear_last_sync_error(account_id)
    return result


@shared_task(
    bind=True,
    base=SyncJobTask,
    job_kind=DETAIL_BATCH,
    name=task_name(DETAIL_BATCH),
    **get_policy(DETAIL_BATCH).task_options(),
)
def detail_batch(self, account_id: int, batch_size: int, sync_kind: str, progress_id: int):
    return MessageDetailEngine().run(account_id, batch_size, sync_kind, progress_id)


@shared_task(name="mail.tasks.sync_account")
def sync_account(account_id: int):
    """Run the coordinator for one account"""
    return coordinator.sync_account(account_id).as_dict()


@shared_task(name="mail.tasks.sync_all_accounts")
def sync_all_accounts():
    """Run the coordinator for all connected accounts"""
    results = [result.as_dict() for result in coordinator.sync_all_accounts()]
    if not results:
        return {"message": "No accounts to sync", "accounts": []}
    return results
