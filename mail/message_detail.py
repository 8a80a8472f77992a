"""Detail batch worker: enrich stubs with full message data, then resubmit
itself until no stub of the account needs detail."""
import base64
import binascii
import email.utils
import logging
import math
from datetime import datetime, timezone as utc_tz
from email.utils import parsedate_to_datetime
from typing import List, Optional, Tuple

from django.db import transaction
from django.utils import timezone

from accounts.models import Account
from mail import dispatch
from mail import progress as sync_progress
from mail.exceptions import MessageNotFoundError, RemoteDataError
from mail.models import EmailMessage, Header, MessageLabel, MessagePart, SyncKind, SyncProgress
from mail.services import GmailService
from mail.sync_state import mark_initial_sync_completed

logger = logging.getLogger(__name__)
sync_audit = logging.getLogger("mail.sync_audit")

SNIPPET_MAX_LENGTH = 500
SUBJECT_MAX_LENGTH = 512
FROM_ADDRESS_MAX_LENGTH = 255
HEADER_NAME_MAX_LENGTH = 200


def _truncate(value: Optional[str], max_length: int) -> Optional[str]:
    if value is None:
        return None
    s = str(value)
    return s[:max_length] if len(s) > max_length else s


def normalize_snippet(snippet: Optional[str]) -> Optional[str]:
    if snippet and len(snippet) > SNIPPET_MAX_LENGTH:
        return f"{snippet[:SNIPPET_MAX_LENGTH - 3]}..."
    return snippet


def parse_header_date(value: Optional[str]) -> Optional[datetime]:
    """Aware datetime from an RFC 2822 Date header; naive values are UTC."""
    if not value:
        return None
    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if parsed is None:
        return None
    if timezone.is_naive(parsed):
        parsed = parsed.replace(tzinfo=utc_tz.utc)
    return parsed


def header_date_ms(value: Optional[str]) -> Optional[int]:
    parsed = parse_header_date(value)
    return int(parsed.timestamp() * 1000) if parsed else None


def resolve_internal_date(remote_value, date_header: Optional[str], fallback_ms: int) -> int:
    """Remote internalDate, else the Date header, else ``fallback_ms``."""
    if remote_value is not None and str(remote_value).strip().isdigit():
        return int(str(remote_value).strip())
    return header_date_ms(date_header) or fallback_ms


def _decode_body(data: Optional[str]) -> Optional[str]:
    if not data:
        return None
    try:
        padded = data + "=" * (-len(data) % 4)
        return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError):
        return None


def flatten_parts(payload: dict) -> List[dict]:
    """Depth-first list of MIME parts, each with its parent's part id. Parts
    without a partId get their position path so ids stay unique per message."""
    flat = []

    def visit(part: dict, parent_id: Optional[str], path: str):
        part_id = part.get("partId")
        if part_id is None or part_id in seen:
            part_id = path
        seen.add(part_id)
        body = part.get("body") or {}
        mime_type = part.get("mimeType") or "application/octet-stream"
        filename = (part.get("filename") or "").strip() or None
        text = None
        if mime_type.startswith("text/") and not filename:
            text = _decode_body(body.get("data"))
        flat.append(
            {
                "part_id": part_id,
                "parent_part_id": parent_id,
                "mime_type": _truncate(mime_type, 200),
                "filename": _truncate(filename, 500),
                "body": text,
                "size_estimate": body.get("size"),
            }
        )
        for index, child in enumerate(part.get("parts") or []):
            visit(child, part_id, f"{path}.{index}" if path else str(index))

    seen = set()
    if payload:
        visit(payload, None, "")
    return flat


def parse_message(message: EmailMessage, data: dict) -> Tuple[dict, List[Tuple[str, str]], List[dict], List[str]]:
    """Split a Gmail message resource into column values, headers, parts and
    label ids."""
    payload = data.get("payload") or {}
    headers = [
        (h.get("name") or "", h.get("value"))
        for h in payload.get("headers") or []
        if h.get("name")
    ]
    first = {}
    for name, value in headers:
        first.setdefault(name.lower(), value)

    date_sent = parse_header_date(first.get("date"))

    from_address = None
    if first.get("from"):
        from_address = email.utils.parseaddr(first["from"])[1] or first["from"]

    fields = {
        "thread_id": data.get("threadId") or message.thread_id,
        "history_id": str(data["historyId"]) if data.get("historyId") else None,
        "internal_date": resolve_internal_date(
            data.get("internalDate"), first.get("date"), _created_ms(message)
        ),
        "payload": payload,
        "snippet": normalize_snippet(data.get("snippet")),
        "size_estimate": data.get("sizeEstimate"),
        "subject": _truncate(first.get("subject"), SUBJECT_MAX_LENGTH),
        "from_address": _truncate(from_address, FROM_ADDRESS_MAX_LENGTH),
        "date_sent": date_sent,
    }
    label_ids = [label_id for label_id in data.get("labelIds") or [] if label_id]
    return fields, headers, flatten_parts(payload), label_ids


def _created_ms(message: EmailMessage) -> int:
    return int(message.created_at.timestamp() * 1000)


def store_detail(message: EmailMessage, fields: dict, headers, parts, label_ids) -> None:
    """Write the enriched columns and replace headers, parts and label
    associations in one transaction."""
    with transaction.atomic():
        EmailMessage.objects.filter(pk=message.pk).update(**fields)
        Header.objects.filter(message_id=message.pk).delete()
        Header.objects.bulk_create(
            [Header(message_id=message.pk, name=_truncate(name, HEADER_NAME_MAX_LENGTH), value=value) for name, value in headers]
        )
        MessagePart.objects.filter(message_id=message.pk).delete()
        MessagePart.objects.bulk_create([MessagePart(message_id=message.pk, **part) for part in parts])
        MessageLabel.objects.filter(message_id=message.pk).delete()
        MessageLabel.objects.bulk_create(
            [MessageLabel(message_id=message.pk, external_label_id=label_id) for label_id in dict.fromkeys(label_ids)],
            ignore_conflicts=True,
        )


def store_empty_detail(message: EmailMessage) -> None:
    """Give an unreadable message an empty payload so it stops needing detail."""
    EmailMessage.objects.filter(pk=message.pk).update(
        payload={},
        internal_date=message.internal_date or _created_ms(message),
    )


class MessageDetailEngine:
    def __init__(self, gmail: Optional[GmailService] = None):
        self.gmail = gmail or GmailService()

    def _select_batch(self, account_id: int, sync_kind: str, batch_size: int) -> List[EmailMessage]:
        qs = EmailMessage.objects.needing_detail(account_id)
        if sync_kind == SyncKind.INITIAL:
            qs = qs.order_by("created_at", "id")
        else:
            qs = qs.order_by("-created_at", "-id")
        return list(qs[:batch_size])

    def _enrich(self, account: Account, message: EmailMessage) -> str:
        try:
            data = self.gmail.get_message(account, message.external_message_id)
        except MessageNotFoundError:
            logger.info(
                "Message gone remotely, deleting stub account_id=%s message_id=%s",
                account.pk,
                message.external_message_id,
            )
            message.delete()
            return "deleted"
        except RemoteDataError as e:
            logger.warning(
                "Skipping message with data error account_id=%s message_id=%s: %s",
                account.pk,
                message.external_message_id,
                e,
            )
            store_empty_detail(message)
            return "skipped"

        try:
            fields, headers, parts, label_ids = parse_message(message, data)
        except (AttributeError, KeyError, TypeError, ValueError):
            logger.exception(
                "Malformed message stored without payload account_id=%s message_id=%s",
                account.pk,
                message.external_message_id,
            )
            store_empty_detail(message)
            return "skipped"
        store_detail(message, fields, headers, parts, label_ids)
        return "enriched"

    def run(self, account_id: int, batch_size: int, sync_kind: str, progress_id: int) -> dict:
        account = Account.objects.get(pk=account_id)
        batch = self._select_batch(account_id, sync_kind, batch_size)

        outcomes = {"enriched": 0, "deleted": 0, "skipped": 0}
        for message in batch:
            outcomes[self._enrich(account, message)] += 1

        remaining = EmailMessage.objects.needing_detail(account_id).count()
        sync_progress.record_batch(progress_id, len(batch), math.ceil(remaining / batch_size))

        completed = False
        if remaining > 0:
            dispatch.enqueue_detail_batch(account_id, sync_kind, progress_id, batch_size)
        else:
            completed = sync_progress.mark_completed(progress_id)
            if completed and sync_kind == SyncKind.INITIAL:
                start_history_id = (
                    SyncProgress.objects.filter(pk=progress_id)
                    .values_list("start_history_id", flat=True)
                    .first()
                )
                mark_initial_sync_completed(account_id, start_history_id)
                logger.info(
                    "Initial sync completed account_id=%s history_cursor=%s",
                    account_id,
                    start_history_id,
                )

        sync_audit.info(
            "Detail batch account_id=%s kind=%s processed=%s remaining=%s",
            account_id,
            sync_kind,
            len(batch),
            remaining,
            extra={"account_id": account_id, "sync_kind": sync_kind, "progress_id": progress_id, **outcomes},
        )
        return {
            "account_id": account_id,
            "sync_kind": str(sync_kind),
            "messages_processed": len(batch),
            "remaining_messages": remaining,
            "completed": completed,
            **outcomes,
        }
