"""
Tests for credential handling (GmailOAuthService.get_valid_credentials).
Token refresh is mocked; no network access.
"""
from datetime import timedelta
from unittest.mock import patch

from django.test import TestCase
from django.utils import timezone
from google.auth.exceptions import RefreshError, TransportError

from accounts.models import Account, OAuthToken, Provider
from accounts.services import GmailOAuthService
from mail.exceptions import TransientRemoteError


class GetValidCredentialsTests(TestCase):
    def setUp(self):
        self.account = Account.objects.create(
            email="test@example.com",
            provider=Provider.GMAIL,
            is_connected=True,
        )

    def _token(self, expires_in, refresh_token="refresh-1"):
        return OAuthToken.objects.create(
            account=self.account,
            access_token="access-1",
            refresh_token=refresh_token,
            expires_at=timezone.now() + expires_in,
            scopes="https://www.googleapis.com/auth/gmail.readonly",
        )

    def test_no_token(self):
        self.assertIsNone(GmailOAuthService.get_valid_credentials(self.account))

    def test_valid_token_is_not_refreshed(self):
        self._token(timedelta(hours=1))
        with patch("accounts.services.Credentials.refresh") as refresh:
            credentials = GmailOAuthService.get_valid_credentials(self.account)
        refresh.assert_not_called()
        self.assertEqual(credentials.token, "access-1")
        self.assertEqual(credentials.scopes, ["https://www.googleapis.com/auth/gmail.readonly"])

    def test_expired_token_without_refresh_token(self):
        self._token(timedelta(hours=-1), refresh_token=None)
        self.assertIsNone(GmailOAuthService.get_valid_credentials(self.account))

    def test_expiring_token_is_refreshed_and_stored(self):
        token = self._token(timedelta(seconds=30))

        def fake_refresh(credentials, request):
            credentials.token = "access-2"
            credentials.expiry = (timezone.now() + timedelta(hours=1)).replace(tzinfo=None)

        with patch("accounts.services.Credentials.refresh", autospec=True, side_effect=fake_refresh):
            credentials = GmailOAuthService.get_valid_credentials(self.account)

        self.assertEqual(credentials.token, "access-2")
        token.refresh_from_db()
        self.assertEqual(token.access_token, "access-2")
        self.assertGreater(token.expires_at, timezone.now() + timedelta(minutes=50))

    def test_revoked_grant_disconnects_account(self):
        self._token(timedelta(hours=-1))
        with patch("accounts.services.Credentials.refresh", side_effect=RefreshError("invalid_grant: Token has been revoked")):
            self.assertIsNone(GmailOAuthService.get_valid_credentials(self.account))
        self.account.refresh_from_db()
        self.assertFalse(self.account.is_connected)
        self.assertFalse(OAuthToken.objects.filter(account=self.account).exists())

    def test_transient_refresh_failure_is_retryable(self):
        self._token(timedelta(hours=-1))
        for error in (TransportError("timeout"), RefreshError("temporarily_unavailable")):
            with patch("accounts.services.Credentials.refresh", side_effect=error):
                with self.assertRaises(TransientRemoteError):
                    GmailOAuthService.get_valid_credentials(self.account)
        self.account.refresh_from_db()
        self.assertTrue(self.account.is_connected)


class AccountModelTests(TestCase):
    def test_can_incremental_sync(self):
        account = Account(initial_sync_completed=True, label_sync_completed=True, history_cursor="1")
        self.assertTrue(account.can_incremental_sync)
        account.history_cursor = ""
        self.assertFalse(account.can_incremental_sync)
