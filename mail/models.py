from django.db import models
from django.db.models import Q


class SyncKind(models.TextChoices):
    INITIAL = "initial", "Initial"
    INCREMENTAL = "incremental", "Incremental"
    LABELS = "labels", "Labels"


class SyncStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    IN_PROGRESS = "in_progress", "In progress"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"


ACTIVE_STATUSES = (SyncStatus.PENDING, SyncStatus.IN_PROGRESS)

# Page cursor value once paging has reached the last page
CURSOR_FINISHED = "finished"


class EmailMessageQuerySet(models.QuerySet):
    def needing_detail(self, account_id):
        return self.filter(account_id=account_id).filter(
            Q(internal_date__isnull=True) | Q(payload__isnull=True)
        )

    def upsert_stubs(self, account_id, identities):
        """Insert a stub per (message id, thread id) pair unless the message is
        already mirrored. Existing rows, enriched or not, are left untouched."""
        stubs = {}
        for message_id, thread_id in identities:
            if message_id and message_id not in stubs:
                stubs[message_id] = self.model(
                    account_id=account_id,
                    external_message_id=message_id,
                    thread_id=thread_id,
                )
        if stubs:
            self.bulk_create(list(stubs.values()), ignore_conflicts=True)
        return len(stubs)


class EmailMessage(models.Model):
    """A mirrored message. Starts as a stub (id and thread only) and is enriched
    by the detail batch worker."""

    account = models.ForeignKey(
        "accounts.Account", on_delete=models.CASCADE, related_name="email_messages"
    )
    external_message_id = models.CharField(max_length=64)
    thread_id = models.CharField(max_length=64, blank=True, null=True)
    history_id = models.CharField(max_length=64, blank=True, null=True)
    # Epoch milliseconds, as Gmail reports it
    internal_date = models.BigIntegerField(blank=True, null=True)
    payload = models.JSONField(blank=True, null=True)
    snippet = models.TextField(blank=True, null=True)
    size_estimate = models.IntegerField(blank=True, null=True)
    subject = models.CharField(max_length=512, blank=True, null=True)
    from_address = models.CharField(max_length=255, blank=True, null=True)
    date_sent = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = EmailMessageQuerySet.as_manager()

    class Meta:
        unique_together = (("account", "external_message_id"),)
        indexes = [
            models.Index(fields=["account", "internal_date"], name="mail_emailm_account_4c1d2e_idx"),
            models.Index(fields=["account", "created_at"], name="mail_emailm_account_7a9f3b_idx"),
            models.Index(fields=["account", "thread_id"], name="mail_emailm_account_2e8c6a_idx"),
        ]
        ordering = ["-internal_date", "-created_at"]

    def __str__(self):
        return self.subject or self.external_message_id

    @property
    def needs_detail(self) -> bool:
        return self.internal_date is None or self.payload is None


class Header(models.Model):
    message = models.ForeignKey(
        EmailMessage, on_delete=models.CASCADE, related_name="headers"
    )
    name = models.CharField(max_length=200)
    value = models.TextField(blank=True, null=True)

    class Meta:
        indexes = [models.Index(fields=["message", "name"], name="mail_header_message_5d3b8f_idx")]

    def __str__(self):
        return f"{self.name}: {self.value}"


class MessagePart(models.Model):
    message = models.ForeignKey(
        EmailMessage, on_delete=models.CASCADE, related_name="parts"
    )
    part_id = models.CharField(max_length=50)
    parent_part_id = models.CharField(max_length=50, blank=True, null=True)
    mime_type = models.CharField(max_length=200)
    filename = models.CharField(max_length=500, blank=True, null=True)
    body = models.TextField(blank=True, null=True)
    size_estimate = models.IntegerField(blank=True, null=True)

    class Meta:
        unique_together = (("message", "part_id"),)
        ordering = ["message", "id"]

    def __str__(self):
        return f"{self.part_id} {self.mime_type}"


class Label(models.Model):
    class Type(models.TextChoices):
        SYSTEM = "system", "System"
        USER = "user", "User"

    account = models.ForeignKey(
        "accounts.Account", on_delete=models.CASCADE, related_name="labels"
    )
    external_label_id = models.CharField(max_length=255)
    name = models.CharField(max_length=255)
    type = models.CharField(max_length=16, choices=Type.choices, default=Type.USER)
    color = models.CharField(max_length=32, blank=True, null=True)
    label_list_visibility = models.BooleanField(default=True)
    message_list_visibility = models.BooleanField(default=True)
    messages_total = models.IntegerField(default=0)
    messages_unread = models.IntegerField(default=0)
    threads_total = models.IntegerField(default=0)
    threads_unread = models.IntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        unique_together = (("account", "external_label_id"),)
        ordering = ["account", "name"]

    def __str__(self):
        return self.name or self.external_label_id


class MessageLabel(models.Model):
    """Message to label association, keyed by the remote label id so it can be
    written before label sync has seen a new label."""

    message = models.ForeignKey(
        EmailMessage, on_delete=models.CASCADE, related_name="message_labels"
    )
    external_label_id = models.CharField(max_length=255)

    class Meta:
        unique_together = (("message", "external_label_id"),)
        indexes = [models.Index(fields=["external_label_id"], name="mail_messag_externa_6b2f9c_idx")]

    def __str__(self):
        return f"{self.message_id}:{self.external_label_id}"


class SyncProgress(models.Model):
    """Checkpoint for one run of one sync kind for one account.

    At most one row per (account, kind) is pending or in progress; terminal rows
    are kept as the run history.
    """

    account = models.ForeignKey(
        "accounts.Account", on_delete=models.CASCADE, related_name="sync_progress"
    )
    kind = models.CharField(max_length=16, choices=SyncKind.choices)
    status = models.CharField(
        max_length=16, choices=SyncStatus.choices, default=SyncStatus.PENDING
    )
    cursor = models.CharField(max_length=255, blank=True, null=True)
    start_history_id = models.CharField(max_length=64, blank=True, null=True)
    num_processed = models.IntegerField(default=0)
    num_total = models.IntegerField(default=0)
    batches_completed = models.IntegerField(default=0)
    batches_total = models.IntegerField(default=0)
    error_message = models.TextField(blank=True)
    started_at = models.DateTimeField(blank=True, null=True)
    completed_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at", "-id"]
        indexes = [models.Index(fields=["account", "kind", "status"], name="mail_syncpr_account_1f4e7a_idx")]
        constraints = [
            models.UniqueConstraint(
                fields=["account", "kind"],
                condition=Q(status__in=["pending", "in_progress"]),
                name="mail_syncprogress_one_active_per_kind",
            )
        ]

    def __str__(self):
        return f"SyncProgress {self.kind} account={self.account_id} {self.status}"

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    @property
    def paging_finished(self) -> bool:
        return self.cursor == CURSOR_FINISHED
