"""
Start a Celery worker that consumes exactly one sync job kind's queue, with
that kind's concurrency from MAIL_SYNC_JOB_POLICIES.
"""
from django.core.management.base import BaseCommand

from mail.dispatch import JOB_KINDS, get_policy
from mailmirror.celery import app as celery_app


class Command(BaseCommand):
    help = "Run a worker for one job kind: " + ", ".join(JOB_KINDS)

    def add_arguments(self, parser):
        parser.add_argument("kind", choices=JOB_KINDS)
        parser.add_argument("--loglevel", default="INFO")

    def handle(self, *args, **options):
        kind = options["kind"]
        policy = get_policy(kind)
        self.stdout.write(
            f"Starting {kind} worker on queue {policy.queue} "
            f"(concurrency={policy.concurrency}, rate_limit={policy.rate_limit or 'none'})"
        )
        celery_app.worker_main(policy.worker_argv(kind, options["loglevel"]))
