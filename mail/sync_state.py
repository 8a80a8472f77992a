"""Account sync state: what an account needs, and the writes that move it forward."""
import logging
from dataclasses import dataclass
from typing import Optional

from django.db import transaction
from django.utils import timezone

from accounts.models import Account

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncRequirements:
    account: Optional[Account]
    needs_label_sync: bool
    needs_initial_sync: bool
    can_incremental_sync: bool


def get_sync_requirements(account_id: int) -> SyncRequirements:
    account = Account.objects.filter(pk=account_id).first()
    if account is None:
        return SyncRequirements(
            account=None,
            needs_label_sync=True,
            needs_initial_sync=True,
            can_incremental_sync=False,
        )
    return SyncRequirements(
        account=account,
        needs_label_sync=not account.label_sync_completed,
        needs_initial_sync=not account.initial_sync_completed,
        can_incremental_sync=account.can_incremental_sync,
    )


def can_incremental_sync(account_id: int) -> bool:
    return get_sync_requirements(account_id).can_incremental_sync


def cursor_advances(current: Optional[str], new: Optional[str]) -> bool:
    """True if moving from ``current`` to ``new`` does not go backwards.

    Cursors are opaque, but Gmail history ids are increasing integers, so numeric
    cursors are compared as numbers.
    """
    if not new:
        return False
    if not current:
        return True
    if current.isdigit() and new.isdigit():
        return int(new) >= int(current)
    return True


def advance_history_cursor(account_id: int, new_cursor: Optional[str], **fields) -> bool:
    """Store ``new_cursor`` unless it would regress; extra ``fields`` are written
    either way. Returns whether the cursor moved."""
    with transaction.atomic():
        account = Account.objects.select_for_update().get(pk=account_id)
        moved = cursor_advances(account.history_cursor, new_cursor)
        update_fields = dict(fields)
        if moved:
            update_fields["history_cursor"] = new_cursor
        elif new_cursor:
            logger.warning(
                "Ignoring history cursor regression account_id=%s current=%s new=%s",
                account_id,
                account.history_cursor,
                new_cursor,
            )
        if update_fields:
            Account.objects.filter(pk=account_id).update(updated_at=timezone.now(), **update_fields)
    return moved


def mark_label_sync_completed(account_id: int) -> None:
    Account.objects.filter(pk=account_id).update(
        label_sync_completed=True, updated_at=timezone.now()
    )


def mark_initial_sync_completed(account_id: int, history_cursor: Optional[str]) -> None:
    advance_history_cursor(
        account_id,
        history_cursor,
        initial_sync_completed=True,
        last_full_sync_at=timezone.now(),
    )


def reset_sync_state(account_id: int, scope: str = "full") -> None:
    """Forget sync state so the coordinator starts over.

    ``full`` clears everything (labels and initial sync run again);
    ``incremental`` only drops the history cursor, which forces a new initial
    sync since incremental sync needs a cursor.
    """
    if scope == "full":
        Account.objects.filter(pk=account_id).update(
            history_cursor=None,
            initial_sync_completed=False,
            label_sync_completed=False,
            last_full_sync_at=None,
            last_incremental_sync_at=None,
            updated_at=timezone.now(),
        )
    elif scope == "incremental":
        Account.objects.filter(pk=account_id).update(
            history_cursor=None,
            initial_sync_completed=False,
            last_incremental_sync_at=None,
            updated_at=timezone.now(),
        )
    else:
        raise ValueError(f"Unknown reset scope: {scope}")
    logger.info("Sync state reset account_id=%s scope=%s", account_id, scope)
