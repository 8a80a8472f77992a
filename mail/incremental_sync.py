"""Incremental sync: apply the remote change log since the stored history cursor.

History records are classified into four buckets (added messages, deleted
messages, labels added, labels removed) and applied in that order inside one
transaction whose last write advances the cursor. Every step is idempotent, so a
run that dies before the commit is simply replayed from the old cursor.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set

from django.db import transaction
from django.utils import timezone

from mail import dispatch
from mail import progress as sync_progress
from mail.exceptions import HistoryExpiredError, SyncPreconditionError
from mail.models import EmailMessage, MessageLabel, SyncKind
from mail.services import GmailService, HistoryRecord
from mail.sync_state import advance_history_cursor, get_sync_requirements, reset_sync_state

logger = logging.getLogger(__name__)
sync_audit = logging.getLogger("mail.sync_audit")


@dataclass
class LabelChange:
    """Net label delta for one message within one window. A later record wins
    per label, so +X then -X nets to removed and -X then +X nets to added."""

    added: Set[str] = field(default_factory=set)
    removed: Set[str] = field(default_factory=set)

    def add(self, label_ids: Iterable[str]) -> None:
        for label_id in label_ids:
            self.added.add(label_id)
            self.removed.discard(label_id)

    def remove(self, label_ids: Iterable[str]) -> None:
        for label_id in label_ids:
            self.removed.add(label_id)
            self.added.discard(label_id)


@dataclass
class HistoryDelta:
    # message id -> thread id, in first-seen order
    added: Dict[str, Optional[str]] = field(default_factory=dict)
    deleted: List[str] = field(default_factory=list)
    label_changes: Dict[str, LabelChange] = field(default_factory=dict)

    @property
    def total_changes(self) -> int:
        return len(self.added) + len(self.deleted) + len(self.label_changes)


def classify_history(records: Iterable[HistoryRecord]) -> HistoryDelta:
    """Sort every record's changes into buckets. A record may carry any mix of
    change kinds, and all of them are collected."""
    delta = HistoryDelta()
    deleted_seen = set()
    for record in records:
        if record.messages_added is not None:
            for identity in record.messages_added:
                if identity.message_id:
                    delta.added.setdefault(identity.message_id, identity.thread_id)
        if record.messages_deleted is not None:
            for message_id in record.messages_deleted:
                if message_id and message_id not in deleted_seen:
                    deleted_seen.add(message_id)
                    delta.deleted.append(message_id)
        if record.labels_added is not None:
            for label_delta in record.labels_added:
                if label_delta.message_id and label_delta.label_ids:
                    delta.label_changes.setdefault(label_delta.message_id, LabelChange()).add(
                        label_delta.label_ids
                    )
        if record.labels_removed is not None:
            for label_delta in record.labels_removed:
                if label_delta.message_id and label_delta.label_ids:
                    delta.label_changes.setdefault(label_delta.message_id, LabelChange()).remove(
                        label_delta.label_ids
                    )
    return delta


def apply_label_changes(account_id: int, label_changes: Dict[str, LabelChange]) -> int:
    """Add and remove individual associations. Never replaces a message's set.
    Messages not mirrored locally are skipped; returns how many were changed."""
    if not label_changes:
        return 0
    message_pks = dict(
        EmailMessage.objects.filter(
            account_id=account_id, external_message_id__in=list(label_changes)
        ).values_list("external_message_id", "pk")
    )
    applied = 0
    for message_id, change in label_changes.items():
        message_pk = message_pks.get(message_id)
        if message_pk is None:
            logger.debug(
                "Label delta for unknown message skipped account_id=%s message_id=%s",
                account_id,
                message_id,
            )
            continue
        if change.added:
            MessageLabel.objects.bulk_create(
                [MessageLabel(message_id=message_pk, external_label_id=label_id) for label_id in sorted(change.added)],
                ignore_conflicts=True,
            )
        if change.removed:
            MessageLabel.objects.filter(
                message_id=message_pk, external_label_id__in=change.removed
            ).delete()
        applied += 1
    return applied


def apply_history_delta(account_id: int, delta: HistoryDelta, new_cursor: Optional[str]) -> bool:
    """Apply the buckets in order, then advance the cursor, all in one
    transaction. Returns whether the cursor moved."""
    with transaction.atomic():
        EmailMessage.objects.upsert_stubs(account_id, delta.added.items())
        if delta.deleted:
            EmailMessage.objects.filter(
                account_id=account_id, external_message_id__in=delta.deleted
            ).delete()
        apply_label_changes(account_id, delta.label_changes)
        return advance_history_cursor(
            account_id, new_cursor, last_incremental_sync_at=timezone.now()
        )


class IncrementalSyncEngine:
    def __init__(self, gmail: Optional[GmailService] = None):
        self.gmail = gmail or GmailService()

    def run(self, account_id: int) -> dict:
        requirements = get_sync_requirements(account_id)
        if requirements.account is None:
            raise SyncPreconditionError(f"Account {account_id} does not exist")
        if not requirements.can_incremental_sync:
            raise SyncPreconditionError(
                f"Account {account_id} cannot run incremental sync: "
                "needs completed initial and label sync and a history cursor"
            )
        account = requirements.account
        start_cursor = account.history_cursor

        progress = sync_progress.start_run(account_id, SyncKind.INCREMENTAL, cursor=start_cursor)
        sync_progress.mark_in_progress(progress.pk)

        try:
            history = self.gmail.list_history(account, start_cursor)
        except HistoryExpiredError as e:
            logger.warning(
                "History cursor expired account_id=%s cursor=%s; initial sync required",
                account_id,
                start_cursor,
            )
            sync_progress.mark_failed(progress.pk, f"History cursor expired: {e}")
            reset_sync_state(account_id, "incremental")
            raise
        except Exception:
            logger.exception("Incremental sync failed account_id=%s", account_id)
            raise

        delta = classify_history(history.records)
        new_cursor = history.history_id or self.gmail.get_current_history_id(account)
        cursor_moved = apply_history_delta(account_id, delta, new_cursor)

        total = delta.total_changes
        # Stubs left behind by an earlier run whose enqueue failed count too
        if EmailMessage.objects.needing_detail(account_id).exists():
            dispatch.enqueue_detail_batch(account_id, SyncKind.INCREMENTAL, progress.pk)
            sync_progress.mark_in_progress(progress.pk, num_total=total, cursor=new_cursor)
            action = "started"
        else:
            sync_progress.mark_in_progress(
                progress.pk, num_total=total, num_processed=total, cursor=new_cursor
            )
            sync_progress.mark_completed(progress.pk)
            action = "completed"

        sync_audit.info(
            "Incremental sync applied account_id=%s added=%s deleted=%s label_changes=%s cursor=%s->%s",
            account_id,
            len(delta.added),
            len(delta.deleted),
            len(delta.label_changes),
            start_cursor,
            new_cursor,
            extra={
                "account_id": account_id,
                "added": len(delta.added),
                "deleted": len(delta.deleted),
                "label_changes": len(delta.label_changes),
                "truncated": history.truncated,
                "cursor_moved": cursor_moved,
            },
        )
        return {
            "account_id": account_id,
            "action": action,
            "new_messages": len(delta.added),
            "deleted_messages": len(delta.deleted),
            "label_changes": len(delta.label_changes),
            "total_changes": total,
            "history_cursor": new_cursor,
            "progress_id": progress.pk,
        }
