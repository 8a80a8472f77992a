"""Sync coordinator: decide which sync an account needs and dispatch exactly one
job for it. No sync work happens here."""
import logging
from dataclasses import dataclass
from typing import List, Optional

from django.conf import settings

from accounts.models import Account
from mail import dispatch
from mail import progress as sync_progress
from mail.models import SyncKind
from mail.sync_status import acquire_dispatch_lock, release_dispatch_lock
from mail.sync_state import get_sync_requirements

logger = logging.getLogger(__name__)
sync_audit = logging.getLogger("mail.sync_audit")

DISPATCHED = "dispatched"
SKIPPED = "skipped"


@dataclass(frozen=True)
class DispatchResult:
    account_id: int
    action: str
    sync_kind: Optional[str] = None
    task_id: Optional[str] = None
    reason: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "account_id": self.account_id,
            "action": self.action,
            "sync_kind": self.sync_kind,
            "task_id": self.task_id,
            "reason": self.reason,
        }


def choose_sync_kind(requirements) -> Optional[str]:
    """Labels first, then initial, then incremental; None when nothing applies."""
    if requirements.needs_label_sync:
        return SyncKind.LABELS
    if requirements.needs_initial_sync:
        return SyncKind.INITIAL
    if requirements.can_incremental_sync:
        return SyncKind.INCREMENTAL
    return None


def sync_account(account_id: int) -> DispatchResult:
    """Dispatch the one sync job this account needs right now.

    Raises DispatchError when the broker refuses the job; nothing is marked in
    that case, so the next call simply tries again.
    """
    requirements = get_sync_requirements(account_id)
    account = requirements.account
    if account is None:
        logger.warning("sync_account: account_id=%s not found", account_id)
        return DispatchResult(account_id, SKIPPED, reason="Account not found")
    if not account.is_connected:
        logger.warning("sync_account: account_id=%s not connected", account_id)
        return DispatchResult(account_id, SKIPPED, reason="Account is not connected")
    if not account.sync_enabled:
        logger.info("sync_account: account_id=%s sync disabled", account_id)
        return DispatchResult(account_id, SKIPPED, reason="Sync is disabled for this account")

    sync_kind = choose_sync_kind(requirements)
    if sync_kind is None:
        return DispatchResult(account_id, SKIPPED, reason="No sync needed")

    if not acquire_dispatch_lock(account_id):
        logger.info("sync_account skipped account_id=%s reason=lock-held", account_id)
        return DispatchResult(account_id, SKIPPED, sync_kind=sync_kind, reason="Dispatch already in progress")
    try:
        running = sync_progress.active_run(
            account_id, sync_kind, stale_after_seconds=settings.MAIL_SYNC_STALE_PROGRESS_SECONDS
        )
        if running is not None:
            return DispatchResult(
                account_id,
                SKIPPED,
                sync_kind=sync_kind,
                reason=f"Sync already running (progress {running.pk})",
            )
        task_id = dispatch.enqueue_sync(sync_kind, account_id)
    finally:
        release_dispatch_lock(account_id)

    sync_audit.info(
        "Sync dispatched account_id=%s kind=%s task_id=%s",
        account_id,
        sync_kind,
        task_id,
        extra={"account_id": account_id, "sync_kind": str(sync_kind), "task_id": task_id},
    )
    return DispatchResult(account_id, DISPATCHED, sync_kind=str(sync_kind), task_id=task_id)


def sync_all_accounts() -> List[DispatchResult]:
    """Run the coordinator for every connected account with sync enabled. One
    account's dispatch failure does not stop the others."""
    results = []
    account_ids = Account.objects.filter(is_connected=True, sync_enabled=True).values_list("pk", flat=True)
    for account_id in account_ids:
        try:
            results.append(sync_account(account_id))
        except Exception as e:
            logger.exception("sync_all_accounts: dispatch failed account_id=%s", account_id)
            results.append(DispatchResult(account_id, "error", reason=str(e)))
    return results
