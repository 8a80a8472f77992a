"""Initial sync: page through the whole mailbox once, writing a stub per message.

States: start -> paging -> batching -> done. The page cursor is stored on the
progress row only after the page's stubs are written, so a retried job resumes
from the last durable page and re-running a page is harmless (stubs are
upserted). Enrichment and completion belong to the detail batch worker.
"""
import logging
from typing import Optional

from django.conf import settings

from accounts.models import Account
from mail import dispatch
from mail import progress as sync_progress
from mail.models import CURSOR_FINISHED, EmailMessage, SyncKind, SyncProgress
from mail.services import GmailService

logger = logging.getLogger(__name__)
sync_audit = logging.getLogger("mail.sync_audit")


class InitialSyncEngine:
    def __init__(self, gmail: Optional[GmailService] = None):
        self.gmail = gmail or GmailService()

    def _resumable_run(self, account_id: int) -> Optional[SyncProgress]:
        """An active run that stopped mid-paging, if any."""
        progress = sync_progress.active_run(account_id, SyncKind.INITIAL)
        if progress and progress.cursor and not progress.paging_finished:
            return progress
        return None

    def _skipped(self, account_id: int, reason: str, progress_id: Optional[int] = None) -> dict:
        logger.info("Initial sync skipped account_id=%s: %s", account_id, reason)
        return {"account_id": account_id, "action": "skipped", "reason": reason, "progress_id": progress_id}

    def _detail_phase_run(self, account_id: int) -> Optional[dict]:
        """Handle a duplicate job that arrives once paging is done. A live run is
        left to its detail batches; a stale one gets its batch chain restarted."""
        progress = sync_progress.active_run(account_id, SyncKind.INITIAL)
        if progress is None or not progress.paging_finished:
            return None
        live = sync_progress.active_run(
            account_id, SyncKind.INITIAL, stale_after_seconds=settings.MAIL_SYNC_STALE_PROGRESS_SECONDS
        )
        if live is not None:
            return self._skipped(account_id, "Paging already finished", progress.pk)
        logger.warning(
            "Restarting detail batches for stale initial run account_id=%s progress_id=%s",
            account_id,
            progress.pk,
        )
        dispatch.enqueue_detail_batch(account_id, SyncKind.INITIAL, progress.pk)
        sync_progress.mark_in_progress(progress.pk)
        return {
            "account_id": account_id,
            "action": "resumed",
            "total_messages": progress.num_total,
            "pages": 0,
            "progress_id": progress.pk,
        }

    def run(self, account_id: int) -> dict:
        account = Account.objects.get(pk=account_id)
        if account.initial_sync_completed:
            return self._skipped(account_id, "Initial sync already completed")
        handled = self._detail_phase_run(account_id)
        if handled is not None:
            return handled
        try:
            progress = self._resumable_run(account_id)
            if progress is not None:
                page_token = progress.cursor
                total = progress.num_total
                logger.info(
                    "Resuming initial sync account_id=%s progress_id=%s total_so_far=%s",
                    account_id,
                    progress.pk,
                    total,
                )
            else:
                progress = sync_progress.start_run(account_id, SyncKind.INITIAL)
                page_token = None
                total = 0

            if not progress.start_history_id:
                # Changes made while paging are picked up by the first incremental run
                start_history_id = self.gmail.get_current_history_id(account)
                sync_progress.mark_in_progress(progress.pk, start_history_id=start_history_id)
            else:
                sync_progress.mark_in_progress(progress.pk)

            pages = 0
            while True:
                page = self.gmail.list_messages(account, page_token)
                identities = []
                for identity in page.identities:
                    if not identity.message_id:
                        logger.warning(
                            "Skipping message identity without id account_id=%s thread_id=%s",
                            account_id,
                            identity.thread_id,
                        )
                        continue
                    identities.append((identity.message_id, identity.thread_id))
                EmailMessage.objects.upsert_stubs(account_id, identities)
                total += len(identities)
                pages += 1
                page_token = page.next_page_token
                sync_progress.set_cursor(progress.pk, page_token or CURSOR_FINISHED, total)
                if not page_token:
                    break

            dispatch.enqueue_detail_batch(account_id, SyncKind.INITIAL, progress.pk)
            sync_progress.mark_in_progress(progress.pk, num_total=total)
        except Exception:
            logger.exception("Initial sync failed account_id=%s", account_id)
            raise

        sync_audit.info(
            "Initial sync paging completed account_id=%s pages=%s total=%s",
            account_id,
            pages,
            total,
            extra={"account_id": account_id, "pages": pages, "total": total, "progress_id": progress.pk},
        )
        return {
            "account_id": account_id,
            "action": "started",
            "total_messages": total,
            "pages": pages,
            "progress_id": progress.pk,
        }
