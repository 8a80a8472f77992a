import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from django.conf import settings
from google.auth.exceptions import TransportError
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from accounts.models import Account
from accounts.services import GmailOAuthService
from mail.exceptions import (
    HistoryExpiredError,
    MailboxAuthError,
    MessageNotFoundError,
    RemoteDataError,
    TransientRemoteError,
)

logger = logging.getLogger(__name__)
sync_audit = logging.getLogger("mail.sync_audit")

RETRYABLE_STATUSES = (429, 500, 502, 503, 504)
HISTORY_TYPES = ["messageAdded", "messageDeleted", "labelAdded", "labelRemoved"]
HISTORY_PAGE_SIZE = 500


@dataclass(frozen=True)
class MessageIdentity:
    message_id: str
    thread_id: Optional[str] = None

    @classmethod
    def from_api(cls, data: dict) -> "MessageIdentity":
        return cls(message_id=data.get("id") or "", thread_id=data.get("threadId"))


@dataclass(frozen=True)
class MessagePage:
    identities: List[MessageIdentity]
    next_page_token: Optional[str] = None


@dataclass(frozen=True)
class LabelDelta:
    message_id: str
    label_ids: Tuple[str, ...]


@dataclass(frozen=True)
class HistoryRecord:
    """One change-log entry. Any combination of the four change kinds may be
    present; absent kinds are None."""

    id: Optional[str] = None
    messages_added: Optional[Tuple[MessageIdentity, ...]] = None
    messages_deleted: Optional[Tuple[str, ...]] = None
    labels_added: Optional[Tuple[LabelDelta, ...]] = None
    labels_removed: Optional[Tuple[LabelDelta, ...]] = None

    @classmethod
    def from_api(cls, data: dict) -> "HistoryRecord":
        messages_added = None
        if "messagesAdded" in data:
            messages_added = tuple(
                MessageIdentity.from_api(item.get("message") or {})
                for item in data["messagesAdded"] or []
            )
        messages_deleted = None
        if "messagesDeleted" in data:
            messages_deleted = tuple(
                (item.get("message") or {}).get("id") or ""
                for item in data["messagesDeleted"] or []
            )
        labels_added = None
        if "labelsAdded" in data:
            labels_added = tuple(_label_delta(item) for item in data["labelsAdded"] or [])
        labels_removed = None
        if "labelsRemoved" in data:
            labels_removed = tuple(_label_delta(item) for item in data["labelsRemoved"] or [])
        return cls(
            id=data.get("id"),
            messages_added=messages_added,
            messages_deleted=messages_deleted,
            labels_added=labels_added,
            labels_removed=labels_removed,
        )


def _label_delta(item: dict) -> LabelDelta:
    return LabelDelta(
        message_id=(item.get("message") or {}).get("id") or "",
        label_ids=tuple(item.get("labelIds") or ()),
    )


@dataclass(frozen=True)
class HistoryPage:
    """Change records since a cursor. ``history_id`` is where the next window
    starts; when ``truncated`` it is the id of the last record returned rather
    than the mailbox head."""

    history_id: Optional[str]
    records: List[HistoryRecord]
    truncated: bool = False


class GmailService:
    """Gmail API client used by the sync engines.

    Every call takes the account explicitly. Credentials are refreshed through
    GmailOAuthService before a service is built; API failures surface as the
    typed errors in mail.exceptions.
    """

    # Class-level cache for service instances per account
    _service_cache = {}
    _credentials_cache = {}

    def __init__(self, max_retries: int = 3):
        self.max_retries = max_retries

    def _get_service(self, account: Account):
        """Get Gmail API service instance with proper caching"""
        account_id = account.pk

        cached_credentials = self._credentials_cache.get(account_id)
        cached_service = self._service_cache.get(account_id)
        if cached_credentials is not None and cached_service is not None:
            if not cached_credentials.expired:
                return cached_service

        # Get fresh credentials (will refresh if needed)
        credentials = GmailOAuthService.get_valid_credentials(account)
        if not credentials:
            self.clear_cache(account_id)
            raise MailboxAuthError(f"Account {account} is not connected or token is invalid")

        service = build("gmail", "v1", credentials=credentials, cache_discovery=False)

        self._credentials_cache[account_id] = credentials
        self._service_cache[account_id] = service
        return service

    @classmethod
    def clear_cache(cls, account_id=None):
        """Clear service cache for an account or all accounts"""
        if account_id:
            cls._service_cache.pop(account_id, None)
            cls._credentials_cache.pop(account_id, None)
        else:
            cls._service_cache.clear()
            cls._credentials_cache.clear()

    def _execute(self, account: Account, request_fn, not_found=RemoteDataError):
        """Execute a Gmail API request with exponential backoff on 429/5xx and
        network errors, then translate the final failure."""
        for attempt in range(self.max_retries):
            last_attempt = attempt == self.max_retries - 1
            try:
                return request_fn().execute()
            except HttpError as e:
                status = getattr(getattr(e, "resp", None), "status", None)
                if _is_retryable(e, status) and not last_attempt:
                    time.sleep((2 ** attempt) + 1)
                    continue
                raise self._translate(account, e, status, not_found) from e
            except (OSError, TransportError) as e:
                if not last_attempt:
                    time.sleep((2 ** attempt) + 1)
                    continue
                raise TransientRemoteError(f"Gmail request failed: {e}") from e

    def _translate(self, account: Account, error: HttpError, status, not_found):
        if _is_retryable(error, status):
            return TransientRemoteError(f"Gmail API error {status}: {error}", status=status)
        if status in (401, 403):
            self.clear_cache(account.pk)
            return MailboxAuthError(f"Gmail API rejected credentials for account {account.pk}: {error}")
        if status == 404:
            return not_found(f"Gmail resource not found: {error}")
        return RemoteDataError(f"Gmail API error {status}: {error}")

    def get_profile(self, account: Account) -> dict:
        service = self._get_service(account)
        return self._execute(account, lambda: service.users().getProfile(userId="me"))

    def get_current_history_id(self, account: Account) -> Optional[str]:
        history_id = self.get_profile(account).get("historyId")
        return str(history_id) if history_id else None

    def list_messages(self, account: Account, page_token: Optional[str] = None) -> MessagePage:
        """One page of message identities, newest first."""
        service = self._get_service(account)
        list_kwargs = {
            "userId": "me",
            "maxResults": settings.MAIL_SYNC_PAGE_SIZE,
        }
        if page_token:
            list_kwargs["pageToken"] = page_token
        results = self._execute(
            account, lambda: service.users().messages().list(**list_kwargs)
        )
        identities = [MessageIdentity.from_api(m) for m in results.get("messages") or []]
        next_page_token = results.get("nextPageToken") or None
        sync_audit.info(
            "Gmail list_messages page account_id=%s returned=%s next_page=%s",
            account.pk,
            len(identities),
            "yes" if next_page_token else "no",
            extra={
                "account_id": account.pk,
                "page_token": "yes" if page_token else "first",
                "message_ids_returned": len(identities),
            },
        )
        return MessagePage(identities=identities, next_page_token=next_page_token)

    def get_message(self, account: Account, external_message_id: str) -> dict:
        """Full message resource (headers, parts, labelIds, internalDate)."""
        service = self._get_service(account)
        return self._execute(
            account,
            lambda: service.users().messages().get(userId="me", id=external_message_id, format="full"),
            not_found=MessageNotFoundError,
        )

    def list_history(self, account: Account, cursor: str, max_pages: Optional[int] = None) -> HistoryPage:
        """Change records since ``cursor``, following pages up to ``max_pages``."""
        if max_pages is None:
            max_pages = settings.MAIL_SYNC_HISTORY_MAX_PAGES
        service = self._get_service(account)
        records: List[HistoryRecord] = []
        page_token: Optional[str] = None
        history_id: Optional[str] = None
        pages = 0
        while True:
            list_kwargs = {
                "userId": "me",
                "startHistoryId": cursor,
                "historyTypes": HISTORY_TYPES,
                "maxResults": HISTORY_PAGE_SIZE,
            }
            if page_token:
                list_kwargs["pageToken"] = page_token
            response = self._execute(
                account,
                lambda kwargs=list_kwargs: service.users().history().list(**kwargs),
                not_found=HistoryExpiredError,
            )
            pages += 1
            records.extend(HistoryRecord.from_api(item) for item in response.get("history") or [])
            if response.get("historyId"):
                history_id = str(response["historyId"])
            page_token = response.get("nextPageToken")
            if not page_token:
                break
            if pages >= max_pages:
                last_id = next((r.id for r in reversed(records) if r.id), None)
                sync_audit.info(
                    "Gmail list_history truncated account_id=%s pages=%s records=%s",
                    account.pk,
                    pages,
                    len(records),
                    extra={"account_id": account.pk, "pages": pages, "records": len(records)},
                )
                return HistoryPage(history_id=str(last_id) if last_id else cursor, records=records, truncated=True)
        sync_audit.info(
            "Gmail list_history account_id=%s pages=%s records=%s history_id=%s",
            account.pk,
            pages,
            len(records),
            history_id,
            extra={"account_id": account.pk, "pages": pages, "records": len(records)},
        )
        return HistoryPage(history_id=history_id, records=records)

    def list_labels(self, account: Account) -> List[Dict]:
        service = self._get_service(account)
        response = self._execute(account, lambda: service.users().labels().list(userId="me"))
        return response.get("labels") or []


def _is_retryable(error: HttpError, status) -> bool:
    if status in RETRYABLE_STATUSES:
        return True
    # Gmail reports per-user quota exhaustion as 403
    if status == 403:
        reason = str(getattr(error, "reason", "") or error).lower()
        return "ratelimitexceeded" in reason.replace(" ", "") or "rate limit" in reason
    return False
