from django.db import models


class Provider(models.TextChoices):
    GMAIL = "gmail", "Gmail"


class Account(models.Model):
    """A mirrored mailbox and its sync state.

    The sync columns are written only by the sync engines, after the remote call
    that justifies the change has succeeded.
    """

    provider = models.CharField(max_length=32, choices=Provider.choices, default=Provider.GMAIL)
    email = models.EmailField(max_length=255)
    is_connected = models.BooleanField(default=False)
    sync_enabled = models.BooleanField(default=True)
    history_cursor = models.CharField(max_length=64, blank=True, null=True)
    initial_sync_completed = models.BooleanField(default=False)
    label_sync_completed = models.BooleanField(default=False)
    last_full_sync_at = models.DateTimeField(blank=True, null=True)
    last_incremental_sync_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True, null=True, blank=True)
    updated_at = models.DateTimeField(auto_now=True, null=True, blank=True)

    class Meta:
        unique_together = (("provider", "email"),)
        indexes = [models.Index(fields=["provider", "email"], name="accounts_ac_provide_3f2a1c_idx")]
        ordering = ["provider", "email"]

    def __str__(self):
        return f"{self.provider} | {self.email}"

    @property
    def can_incremental_sync(self) -> bool:
        return bool(
            self.initial_sync_completed
            and self.label_sync_completed
            and self.history_cursor
        )


class OAuthToken(models.Model):
    """OAuth tokens for mailbox access"""
    account = models.OneToOneField(
        Account, on_delete=models.CASCADE, related_name="oauth_token"
    )
    access_token = models.TextField()
    refresh_token = models.TextField(blank=True, null=True)
    expires_at = models.DateTimeField(blank=True, null=True)
    token_type = models.CharField(max_length=32, default="Bearer")
    scopes = models.TextField(
        blank=True,
        help_text="Comma-separated list of OAuth scopes granted with this token",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [models.Index(fields=["account", "expires_at"], name="accounts_oa_account_9b7e4d_idx")]

    def __str__(self):
        return f"Token for {self.account}"

    def is_expired(self):
        if not self.expires_at:
            return False
        from django.utils import timezone
        return timezone.now() >= self.expires_at

    def get_scopes_list(self):
        """Get scopes as a list"""
        if not self.scopes:
            return []
        return [s.strip() for s in self.scopes.split(",") if s.strip()]

    def set_scopes_list(self, scopes_list):
        """Set scopes from a list"""
        self.scopes = ",".join(scopes_list) if scopes_list else ""
