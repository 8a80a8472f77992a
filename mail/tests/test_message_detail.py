import math
from unittest.mock import patch

from django.test import TestCase

from mail import progress as sync_progress
from mail.exceptions import MessageNotFoundError, RemoteDataError, TransientRemoteError
from mail.message_detail import (
    MessageDetailEngine,
    flatten_parts,
    normalize_snippet,
    resolve_internal_date,
)
from mail.models import EmailMessage, Header, MessageLabel, MessagePart, SyncKind, SyncProgress, SyncStatus
from mail.tests.helpers import gmail_message, make_account, mock_gmail


class HelperTests(TestCase):
    def test_normalize_snippet(self):
        self.assertEqual(normalize_snippet("short"), "short")
        long_snippet = normalize_snippet("a" * 600)
        self.assertEqual(len(long_snippet), 500)
        self.assertTrue(long_snippet.endswith("..."))
        self.assertIsNone(normalize_snippet(None))

    def test_internal_date_fallback_chain(self):
        self.assertEqual(resolve_internal_date("1700000000000", "Tue, 14 Nov 2023 22:13:20 +0000", 1), 1700000000000)
        self.assertEqual(resolve_internal_date(None, "Tue, 14 Nov 2023 22:13:20 +0000", 1), 1700000000000)
        self.assertEqual(resolve_internal_date(None, "not a date", 42), 42)
        self.assertEqual(resolve_internal_date("", None, 42), 42)

    def test_flatten_parts_depth_first(self):
        payload = {
            "partId": "",
            "mimeType": "multipart/mixed",
            "parts": [
                {
                    "partId": "0",
                    "mimeType": "multipart/alternative",
                    "parts": [
                        {"partId": "0.0", "mimeType": "text/plain", "body": {"data": "aGVsbG8=", "size": 5}},
                    ],
                },
                {"partId": "1", "mimeType": "application/pdf", "filename": "a.pdf", "body": {"attachmentId": "x", "size": 99}},
            ],
        }
        parts = flatten_parts(payload)
        self.assertEqual([p["part_id"] for p in parts], ["", "0", "0.0", "1"])
        self.assertEqual([p["parent_part_id"] for p in parts], [None, "", "0", ""])
        self.assertEqual(parts[2]["body"], "hello")
        self.assertIsNone(parts[3]["body"])
        self.assertEqual(parts[3]["filename"], "a.pdf")
        self.assertEqual(parts[3]["size_estimate"], 99)


@patch("mail.dispatch.enqueue_detail_batch", return_value="task-1")
class MessageDetailEngineTests(TestCase):
    def setUp(self):
        self.account = make_account(label_sync_completed=True)
        self.gmail = mock_gmail()
        self.gmail.get_message.side_effect = lambda account, message_id: gmail_message(message_id)

    def _stubs(self, count):
        EmailMessage.objects.upsert_stubs(self.account.pk, [(f"m{i}", "t") for i in range(count)])

    def _run(self, kind=SyncKind.INITIAL, start_history_id="7000"):
        return sync_progress.start_run(self.account.pk, kind, start_history_id=start_history_id)

    def test_enriches_stub(self, enqueue_detail_batch):
        self._stubs(1)
        MessageLabel.objects.create(message=EmailMessage.objects.get(), external_label_id="STALE")
        run = self._run()
        MessageDetailEngine(self.gmail).run(self.account.pk, 10, SyncKind.INITIAL, run.pk)

        message = EmailMessage.objects.get()
        self.assertFalse(message.needs_detail)
        self.assertEqual(message.internal_date, 1700000000000)
        self.assertEqual(message.subject, "Subject m0")
        self.assertEqual(message.from_address, "alice@example.com")
        self.assertEqual(message.snippet, "Snippet for m0")
        self.assertEqual(message.history_id, "2001")
        self.assertEqual(message.size_estimate, 1234)
        self.assertEqual(message.date_sent.year, 2023)
        self.assertEqual(Header.objects.filter(message=message).count(), 3)
        parts = list(MessagePart.objects.filter(message=message).order_by("id"))
        self.assertEqual([p.part_id for p in parts], ["", "0", "1"])
        self.assertEqual(parts[1].body, "hello")
        self.assertEqual(parts[2].body, "<b>hello</b>")
        self.assertEqual(
            set(MessageLabel.objects.filter(message=message).values_list("external_label_id", flat=True)),
            {"INBOX"},
        )

    def test_reenrichment_replaces_rows(self, enqueue_detail_batch):
        self._stubs(1)
        run = self._run()
        engine = MessageDetailEngine(self.gmail)
        engine.run(self.account.pk, 10, SyncKind.INITIAL, run.pk)
        EmailMessage.objects.update(payload=None)
        engine.run(self.account.pk, 10, SyncKind.INITIAL, run.pk)
        self.assertEqual(Header.objects.count(), 3)
        self.assertEqual(MessagePart.objects.count(), 3)
        self.assertEqual(MessageLabel.objects.count(), 1)

    def test_header_date_used_when_internal_date_missing(self, enqueue_detail_batch):
        self._stubs(1)
        self.gmail.get_message.side_effect = lambda account, message_id: gmail_message(message_id, internal_date=None)
        run = self._run()
        MessageDetailEngine(self.gmail).run(self.account.pk, 10, SyncKind.INITIAL, run.pk)
        self.assertEqual(EmailMessage.objects.get().internal_date, 1700000000000)

    def test_missing_remote_message_is_deleted(self, enqueue_detail_batch):
        self._stubs(2)
        self.gmail.get_message.side_effect = [MessageNotFoundError("404"), gmail_message("m1")]
        run = self._run()
        result = MessageDetailEngine(self.gmail).run(self.account.pk, 10, SyncKind.INITIAL, run.pk)
        self.assertEqual(result["deleted"], 1)
        self.assertEqual(result["enriched"], 1)
        self.assertEqual(list(EmailMessage.objects.values_list("external_message_id", flat=True)), ["m1"])

    def test_data_error_stores_empty_payload(self, enqueue_detail_batch):
        self._stubs(1)
        self.gmail.get_message.side_effect = RemoteDataError("400")
        run = self._run()
        result = MessageDetailEngine(self.gmail).run(self.account.pk, 10, SyncKind.INITIAL, run.pk)

        message = EmailMessage.objects.get()
        self.assertEqual(result["skipped"], 1)
        self.assertEqual(message.payload, {})
        self.assertEqual(message.internal_date, int(message.created_at.timestamp() * 1000))
        self.assertFalse(message.needs_detail)

    def test_malformed_message_stores_empty_payload(self, enqueue_detail_batch):
        self._stubs(1)
        self.gmail.get_message.side_effect = lambda account, message_id: {"id": message_id, "payload": "garbage"}
        run = self._run()
        result = MessageDetailEngine(self.gmail).run(self.account.pk, 10, SyncKind.INITIAL, run.pk)
        self.assertEqual(result["skipped"], 1)
        self.assertFalse(EmailMessage.objects.get().needs_detail)

    def test_transient_error_propagates(self, enqueue_detail_batch):
        self._stubs(1)
        self.gmail.get_message.side_effect = TransientRemoteError("503", status=503)
        run = self._run()
        with self.assertRaises(TransientRemoteError):
            MessageDetailEngine(self.gmail).run(self.account.pk, 10, SyncKind.INITIAL, run.pk)
        self.assertTrue(EmailMessage.objects.get().needs_detail)

    def test_initial_order_is_oldest_first(self, enqueue_detail_batch):
        self._stubs(3)
        run = self._run()
        MessageDetailEngine(self.gmail).run(self.account.pk, 1, SyncKind.INITIAL, run.pk)
        self.assertEqual(self.gmail.get_message.call_args.args[1], "m0")

    def test_incremental_order_is_newest_first(self, enqueue_detail_batch):
        self._stubs(3)
        run = self._run(SyncKind.INCREMENTAL, start_history_id=None)
        MessageDetailEngine(self.gmail).run(self.account.pk, 1, SyncKind.INCREMENTAL, run.pk)
        self.assertEqual(self.gmail.get_message.call_args.args[1], "m2")

    def test_batches_terminate(self, enqueue_detail_batch):
        total, batch_size = 7, 3
        self._stubs(total)
        run = self._run()
        engine = MessageDetailEngine(self.gmail)

        runs = 0
        while True:
            enqueue_detail_batch.reset_mock()
            engine.run(self.account.pk, batch_size, SyncKind.INITIAL, run.pk)
            runs += 1
            if not enqueue_detail_batch.called:
                break
            enqueue_detail_batch.assert_called_once_with(self.account.pk, SyncKind.INITIAL, run.pk, batch_size)
            self.assertLessEqual(runs, total)

        self.assertEqual(runs, math.ceil(total / batch_size))
        run.refresh_from_db()
        self.assertEqual(run.status, SyncStatus.COMPLETED)
        self.assertEqual(run.num_processed, total)
        self.assertEqual(run.batches_completed, runs)
        self.assertEqual(run.batches_total, runs)

    def test_completing_initial_run_unlocks_incremental(self, enqueue_detail_batch):
        self._stubs(2)
        run = self._run(start_history_id="7000")
        result = MessageDetailEngine(self.gmail).run(self.account.pk, 10, SyncKind.INITIAL, run.pk)

        self.assertTrue(result["completed"])
        enqueue_detail_batch.assert_not_called()
        self.account.refresh_from_db()
        self.assertTrue(self.account.initial_sync_completed)
        self.assertEqual(self.account.history_cursor, "7000")
        self.assertIsNotNone(self.account.last_full_sync_at)
        self.assertTrue(self.account.can_incremental_sync)

    def test_empty_mailbox_completes_initial_run(self, enqueue_detail_batch):
        run = self._run(start_history_id="7000")
        result = MessageDetailEngine(self.gmail).run(self.account.pk, 10, SyncKind.INITIAL, run.pk)
        self.assertEqual(result["messages_processed"], 0)
        self.assertEqual(SyncProgress.objects.get(pk=run.pk).status, SyncStatus.COMPLETED)
        self.account.refresh_from_db()
        self.assertTrue(self.account.initial_sync_completed)

    def test_completing_incremental_run_keeps_account_state(self, enqueue_detail_batch):
        self._stubs(1)
        run = self._run(SyncKind.INCREMENTAL, start_history_id=None)
        MessageDetailEngine(self.gmail).run(self.account.pk, 10, SyncKind.INCREMENTAL, run.pk)
        self.assertEqual(SyncProgress.objects.get(pk=run.pk).status, SyncStatus.COMPLETED)
        self.account.refresh_from_db()
        self.assertFalse(self.account.initial_sync_completed)
