"""
Run the sync coordinator for one or all accounts: each call dispatches the one
job (labels, initial or incremental) the account needs. A Celery worker per
job kind (see run_sync_worker) does the actual sync.
"""
from django.core.management.base import BaseCommand, CommandError

from accounts.models import Account
from mail import coordinator
from mail.exceptions import DispatchError
from mail.progress import latest_runs
from mail.sync_state import reset_sync_state
from mail.sync_status import get_last_sync_error


class Command(BaseCommand):
    help = (
        "Dispatch the sync each account needs (labels, initial or incremental). "
        "Use --account-id or --email for one account, or --all for all connected. "
        "--reset full|incremental forgets sync state first; --status only reports."
    )

    def add_arguments(self, parser):
        parser.add_argument(
            "--account-id",
            type=int,
            help="Sync only this account ID",
        )
        parser.add_argument(
            "--email",
            type=str,
            help="Sync only this email address",
        )
        parser.add_argument(
            "--all",
            action="store_true",
            help="Sync all connected accounts",
        )
        parser.add_argument(
            "--reset",
            choices=["full", "incremental"],
            help="Reset sync state before dispatching",
        )
        parser.add_argument(
            "--status",
            action="store_true",
            help="Print sync state and latest runs without dispatching",
        )

    def handle(self, *args, **options):
        if options["account_id"]:
            accounts = Account.objects.filter(pk=options["account_id"])
        elif options["email"]:
            accounts = Account.objects.filter(email=options["email"])
        elif options["all"]:
            accounts = Account.objects.filter(is_connected=True, sync_enabled=True)
        else:
            raise CommandError("Pass --account-id, --email or --all")

        if not accounts.exists():
            self.stdout.write(self.style.WARNING("No matching accounts found."))
            return

        for account in accounts:
            self.stdout.write(f"\n{account.email} ({account.provider}, id={account.pk})")
            if options["status"]:
                self._print_status(account)
                continue

            if options["reset"]:
                reset_sync_state(account.pk, options["reset"])
                self.stdout.write(f"  Sync state reset ({options['reset']})")

            try:
                result = coordinator.sync_account(account.pk)
            except DispatchError as e:
                self.stdout.write(self.style.ERROR(f"  Dispatch failed: {e}"))
                continue
            if result.action == coordinator.DISPATCHED:
                self.stdout.write(
                    self.style.SUCCESS(f"  Dispatched {result.sync_kind} sync (task {result.task_id})")
                )
            else:
                self.stdout.write(self.style.WARNING(f"  Skipped: {result.reason}"))

        self.stdout.write(self.style.SUCCESS("\nDone."))

    def _print_status(self, account):
        self.stdout.write(
            f"  connected={account.is_connected} enabled={account.sync_enabled} "
            f"labels_done={account.label_sync_completed} initial_done={account.initial_sync_completed} "
            f"cursor={account.history_cursor or '-'}"
        )
        self.stdout.write(
            f"  last_full_sync_at={account.last_full_sync_at or '-'} "
            f"last_incremental_sync_at={account.last_incremental_sync_at or '-'}"
        )
        for kind, run in sorted(latest_runs(account.pk).items()):
            line = (
                f"  {kind}: {run.status} processed={run.num_processed}/{run.num_total} "
                f"batches={run.batches_completed}/{run.batches_total}"
            )
            if run.error_message:
                line += f" error={run.error_message}"
            self.stdout.write(line)
        last_error = get_last_sync_error(account.pk)
        if last_error:
            self.stdout.write(self.style.ERROR(f"  last error: {last_error}"))
