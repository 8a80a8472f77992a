"""
Tests for incremental sync: classification of history records, label delta
merging, the eligibility gate and crash-safe cursor advance.
"""
from unittest.mock import patch

from django.test import TestCase

from mail.exceptions import DispatchError, HistoryExpiredError, SyncPreconditionError
from mail.incremental_sync import IncrementalSyncEngine, LabelChange, classify_history
from mail.models import EmailMessage, Header, MessageLabel, SyncKind, SyncProgress, SyncStatus
from mail.services import HistoryPage, HistoryRecord, LabelDelta, MessageIdentity
from mail.tests.helpers import make_account, make_synced_account, mock_gmail


def record(record_id, added=None, deleted=None, labels_added=None, labels_removed=None):
    return HistoryRecord(
        id=record_id,
        messages_added=tuple(MessageIdentity(mid, f"t-{mid}") for mid in added) if added is not None else None,
        messages_deleted=tuple(deleted) if deleted is not None else None,
        labels_added=tuple(LabelDelta(mid, tuple(ids)) for mid, ids in labels_added) if labels_added is not None else None,
        labels_removed=tuple(LabelDelta(mid, tuple(ids)) for mid, ids in labels_removed) if labels_removed is not None else None,
    )


class ClassifyHistoryTests(TestCase):
    def test_buckets(self):
        delta = classify_history(
            [
                record("1", added=["m1", "m2"]),
                record("2", deleted=["m3"]),
                record("3", labels_added=[("m4", ["STARRED"])]),
                record("4", labels_removed=[("m4", ["INBOX"]), ("m5", ["UNREAD"])]),
            ]
        )
        self.assertEqual(list(delta.added), ["m1", "m2"])
        self.assertEqual(delta.added["m1"], "t-m1")
        self.assertEqual(delta.deleted, ["m3"])
        self.assertEqual(set(delta.label_changes), {"m4", "m5"})
        self.assertEqual(delta.label_changes["m4"].added, {"STARRED"})
        self.assertEqual(delta.label_changes["m4"].removed, {"INBOX"})
        self.assertEqual(delta.total_changes, 5)

    def test_record_with_several_change_kinds(self):
        delta = classify_history([record("1", added=["m1"], labels_added=[("m1", ["INBOX"])])])
        self.assertEqual(list(delta.added), ["m1"])
        self.assertEqual(delta.label_changes["m1"].added, {"INBOX"})

    def test_empty_record(self):
        delta = classify_history([record("1")])
        self.assertEqual(delta.total_changes, 0)

    def test_later_record_wins_per_label(self):
        change = LabelChange()
        change.add(["X"])
        change.remove(["X"])
        self.assertEqual((change.added, change.removed), (set(), {"X"}))
        change.add(["X"])
        self.assertEqual((change.added, change.removed), ({"X"}, set()))


@patch("mail.dispatch.enqueue_detail_batch", return_value="task-1")
class IncrementalSyncEngineTests(TestCase):
    def setUp(self):
        self.account = make_synced_account(cursor="1000")
        self.gmail = mock_gmail()

    def _message(self, message_id, labels=()):
        message = EmailMessage.objects.create(
            account=self.account,
            external_message_id=message_id,
            thread_id="t",
            internal_date=1700000000000,
            payload={},
        )
        for label_id in labels:
            MessageLabel.objects.create(message=message, external_label_id=label_id)
        return message

    def _labels(self, message):
        return set(MessageLabel.objects.filter(message=message).values_list("external_label_id", flat=True))

    def test_label_deltas_merge_with_existing_labels(self, enqueue_detail_batch):
        message = self._message("m1", labels=["A", "B"])
        self.gmail.list_history.return_value = HistoryPage(
            history_id="1010",
            records=[record("1005", labels_added=[("m1", ["C"])], labels_removed=[("m1", ["B"])])],
        )
        result = IncrementalSyncEngine(self.gmail).run(self.account.pk)

        self.assertEqual(self._labels(message), {"A", "C"})
        self.assertEqual(result["action"], "completed")
        self.assertEqual(result["total_changes"], 1)
        enqueue_detail_batch.assert_not_called()
        self.account.refresh_from_db()
        self.assertEqual(self.account.history_cursor, "1010")
        self.assertIsNotNone(self.account.last_incremental_sync_at)
        run = SyncProgress.objects.get(pk=result["progress_id"])
        self.assertEqual(run.status, SyncStatus.COMPLETED)
        self.assertEqual(run.num_processed, 1)

    def test_added_messages_start_detail_batch(self, enqueue_detail_batch):
        self.gmail.list_history.return_value = HistoryPage(
            history_id="1020", records=[record("1011", added=["new1", "new2"])]
        )
        result = IncrementalSyncEngine(self.gmail).run(self.account.pk)

        self.assertEqual(result["action"], "started")
        self.assertEqual(result["new_messages"], 2)
        self.assertEqual(EmailMessage.objects.needing_detail(self.account.pk).count(), 2)
        enqueue_detail_batch.assert_called_once_with(self.account.pk, SyncKind.INCREMENTAL, result["progress_id"])
        run = SyncProgress.objects.get(pk=result["progress_id"])
        self.assertEqual(run.status, SyncStatus.IN_PROGRESS)
        self.assertEqual(run.num_total, 2)

    def test_deleted_messages_cascade(self, enqueue_detail_batch):
        message = self._message("m1", labels=["INBOX"])
        Header.objects.create(message=message, name="Subject", value="bye")
        self.gmail.list_history.return_value = HistoryPage(history_id="1030", records=[record("1021", deleted=["m1"])])
        IncrementalSyncEngine(self.gmail).run(self.account.pk)

        self.assertFalse(EmailMessage.objects.filter(pk=message.pk).exists())
        self.assertFalse(Header.objects.exists())
        self.assertFalse(MessageLabel.objects.exists())

    def test_label_delta_for_unknown_message_is_skipped(self, enqueue_detail_batch):
        self.gmail.list_history.return_value = HistoryPage(
            history_id="1040", records=[record("1031", labels_added=[("ghost", ["INBOX"])])]
        )
        IncrementalSyncEngine(self.gmail).run(self.account.pk)
        self.assertFalse(MessageLabel.objects.exists())
        self.account.refresh_from_db()
        self.assertEqual(self.account.history_cursor, "1040")

    def test_falls_back_to_profile_history_id(self, enqueue_detail_batch):
        self.gmail.list_history.return_value = HistoryPage(history_id=None, records=[])
        self.gmail.get_current_history_id.return_value = "1050"
        IncrementalSyncEngine(self.gmail).run(self.account.pk)
        self.account.refresh_from_db()
        self.assertEqual(self.account.history_cursor, "1050")

    def test_cursor_never_regresses(self, enqueue_detail_batch):
        self.gmail.list_history.return_value = HistoryPage(history_id="900", records=[])
        IncrementalSyncEngine(self.gmail).run(self.account.pk)
        self.account.refresh_from_db()
        self.assertEqual(self.account.history_cursor, "1000")

    def test_ineligible_account_raises_before_any_write(self, enqueue_detail_batch):
        for account in (
            make_account(email="a@example.com"),
            make_account(email="b@example.com", initial_sync_completed=True, label_sync_completed=True),
            make_account(email="c@example.com", label_sync_completed=True, history_cursor="5"),
        ):
            with self.assertRaises(SyncPreconditionError):
                IncrementalSyncEngine(self.gmail).run(account.pk)
            self.assertFalse(SyncProgress.objects.filter(account=account).exists())
        self.gmail.list_history.assert_not_called()

    def test_missing_account_raises(self, enqueue_detail_batch):
        with self.assertRaises(SyncPreconditionError):
            IncrementalSyncEngine(self.gmail).run(999999)

    def test_failure_before_commit_keeps_old_cursor(self, enqueue_detail_batch):
        self.gmail.list_history.return_value = HistoryPage(
            history_id="1100",
            records=[record("1090", added=["new1"], labels_added=[("new1", ["INBOX"])])],
        )
        with patch("mail.incremental_sync.apply_label_changes", side_effect=RuntimeError("crash")):
            with self.assertRaises(RuntimeError):
                IncrementalSyncEngine(self.gmail).run(self.account.pk)

        self.account.refresh_from_db()
        self.assertEqual(self.account.history_cursor, "1000")
        self.assertFalse(EmailMessage.objects.filter(external_message_id="new1").exists())

        # The replay from the old cursor applies the whole window once
        IncrementalSyncEngine(self.gmail).run(self.account.pk)
        self.account.refresh_from_db()
        self.assertEqual(self.account.history_cursor, "1100")
        message = EmailMessage.objects.get(external_message_id="new1")
        self.assertEqual(self._labels(message), {"INBOX"})

    def test_committed_window_replayed_from_old_cursor(self, enqueue_detail_batch):
        message = self._message("m1", labels=["A", "B"])
        self.gmail.list_history.return_value = HistoryPage(
            history_id="1300",
            records=[
                record("1290", added=["new1"]),
                record("1291", labels_added=[("m1", ["C"])], labels_removed=[("m1", ["B"])]),
            ],
        )
        # Changes commit but the cursor write is lost
        with patch("mail.incremental_sync.advance_history_cursor", return_value=False):
            IncrementalSyncEngine(self.gmail).run(self.account.pk)
        self.account.refresh_from_db()
        self.assertEqual(self.account.history_cursor, "1000")
        self.assertEqual(self._labels(message), {"A", "C"})

        IncrementalSyncEngine(self.gmail).run(self.account.pk)

        self.assertEqual([c.args[1] for c in self.gmail.list_history.call_args_list], ["1000", "1000"])
        self.account.refresh_from_db()
        self.assertEqual(self.account.history_cursor, "1300")
        self.assertEqual(
            sorted(EmailMessage.objects.filter(account=self.account).values_list("external_message_id", flat=True)),
            ["m1", "new1"],
        )
        self.assertEqual(self._labels(message), {"A", "C"})
        self.assertEqual(MessageLabel.objects.filter(message=message).count(), 2)

    def test_stubs_left_by_failed_enqueue_are_picked_up(self, enqueue_detail_batch):
        enqueue_detail_batch.side_effect = DispatchError("broker unavailable")
        self.gmail.list_history.return_value = HistoryPage(history_id="1200", records=[record("1190", added=["m1"])])
        with self.assertRaises(DispatchError):
            IncrementalSyncEngine(self.gmail).run(self.account.pk)
        self.account.refresh_from_db()
        self.assertEqual(self.account.history_cursor, "1200")

        enqueue_detail_batch.side_effect = None
        other = self._message("m2", labels=["INBOX"])
        self.gmail.list_history.return_value = HistoryPage(
            history_id="1210", records=[record("1205", labels_added=[("m2", ["STARRED"])])]
        )
        result = IncrementalSyncEngine(self.gmail).run(self.account.pk)

        self.assertEqual(result["action"], "started")
        self.assertEqual(result["new_messages"], 0)
        enqueue_detail_batch.assert_called_with(self.account.pk, SyncKind.INCREMENTAL, result["progress_id"])
        self.assertEqual(
            list(EmailMessage.objects.needing_detail(self.account.pk).values_list("external_message_id", flat=True)),
            ["m1"],
        )
        self.assertEqual(self._labels(other), {"INBOX", "STARRED"})
        self.assertEqual(SyncProgress.objects.get(pk=result["progress_id"]).status, SyncStatus.IN_PROGRESS)

    def test_expired_cursor_requires_initial_sync(self, enqueue_detail_batch):
        self.gmail.list_history.side_effect = HistoryExpiredError("404")
        with self.assertRaises(HistoryExpiredError):
            IncrementalSyncEngine(self.gmail).run(self.account.pk)

        self.account.refresh_from_db()
        self.assertIsNone(self.account.history_cursor)
        self.assertFalse(self.account.initial_sync_completed)
        self.assertTrue(self.account.label_sync_completed)
        run = SyncProgress.objects.get(account=self.account, kind=SyncKind.INCREMENTAL)
        self.assertEqual(run.status, SyncStatus.FAILED)
