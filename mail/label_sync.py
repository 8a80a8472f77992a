"""Full label reconciliation: upsert every remote label, delete the ones that
disappeared, then mark the account's label sync complete."""
import logging
from typing import Optional

from django.db import transaction

from accounts.models import Account
from mail import progress as sync_progress
from mail.models import Label, MessageLabel, SyncKind
from mail.services import GmailService
from mail.sync_state import mark_label_sync_completed

logger = logging.getLogger(__name__)
sync_audit = logging.getLogger("mail.sync_audit")

LABEL_UPDATE_FIELDS = [
    "name",
    "type",
    "color",
    "label_list_visibility",
    "message_list_visibility",
    "messages_total",
    "messages_unread",
    "threads_total",
    "threads_unread",
]


def label_from_api(account_id: int, data: dict) -> Optional[Label]:
    """Build an unsaved Label from a Gmail label resource; None if it has no id."""
    external_label_id = data.get("id")
    if not external_label_id:
        return None
    label_type = data.get("type")
    color = data.get("color") or {}
    return Label(
        account_id=account_id,
        external_label_id=external_label_id,
        name=data.get("name") or "",
        type=label_type if label_type in Label.Type.values else Label.Type.USER,
        color=color.get("backgroundColor"),
        message_list_visibility=data.get("messageListVisibility") != "hide",
        label_list_visibility=data.get("labelListVisibility") != "labelHide",
        messages_total=data.get("messagesTotal") or 0,
        messages_unread=data.get("messagesUnread") or 0,
        threads_total=data.get("threadsTotal") or 0,
        threads_unread=data.get("threadsUnread") or 0,
    )


class LabelSyncEngine:
    def __init__(self, gmail: Optional[GmailService] = None):
        self.gmail = gmail or GmailService()

    def run(self, account_id: int) -> dict:
        account = Account.objects.get(pk=account_id)
        progress = sync_progress.start_run(account_id, SyncKind.LABELS)
        sync_progress.mark_in_progress(progress.pk)

        remote_labels = self.gmail.list_labels(account)

        labels = []
        for data in remote_labels:
            label = label_from_api(account_id, data)
            if label is None:
                logger.warning("Skipping remote label without id account_id=%s data=%s", account_id, data)
                continue
            labels.append(label)
        remote_ids = {label.external_label_id for label in labels}

        with transaction.atomic():
            if labels:
                Label.objects.bulk_create(
                    labels,
                    update_conflicts=True,
                    unique_fields=["account", "external_label_id"],
                    update_fields=LABEL_UPDATE_FIELDS,
                )
            stale = Label.objects.filter(account_id=account_id).exclude(external_label_id__in=remote_ids)
            stale_ids = list(stale.values_list("external_label_id", flat=True))
            if stale_ids:
                MessageLabel.objects.filter(
                    message__account_id=account_id, external_label_id__in=stale_ids
                ).delete()
                stale.delete()
            mark_label_sync_completed(account_id)

        sync_progress.mark_in_progress(progress.pk, num_total=len(labels), num_processed=len(labels))
        sync_progress.mark_completed(progress.pk)

        sync_audit.info(
            "Label sync completed account_id=%s upserted=%s removed=%s",
            account_id,
            len(labels),
            len(stale_ids),
            extra={"account_id": account_id, "upserted": len(labels), "removed": len(stale_ids)},
        )
        return {
            "account_id": account_id,
            "labels_processed": len(labels),
            "labels_removed": len(stale_ids),
            "progress_id": progress.pk,
            "action": "completed",
        }
