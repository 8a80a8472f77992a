import logging
from datetime import timezone as utc_tz
from typing import Optional

from django.conf import settings
from django.utils import timezone
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials

from accounts.models import Account, OAuthToken
from mail.exceptions import TransientRemoteError

logger = logging.getLogger(__name__)

# Suppress INFO level logging from Google libs
for logger_name in ["google_auth_oauthlib", "google.auth", "googleapiclient"]:
    logging.getLogger(logger_name).setLevel(logging.WARNING)

TOKEN_URI = "https://oauth2.googleapis.com/token"

# Refresh when the access token expires within this many seconds
REFRESH_MARGIN_SECONDS = 300

# Refresh failures that mean the grant itself is gone
PERMANENT_REFRESH_ERRORS = ("invalid_grant", "invalid_token", "unauthorized_client")


class GmailOAuthService:
    """Credential store access for the Gmail client.

    Tokens are obtained by the (external) OAuth flow and saved on
    ``accounts.OAuthToken``; this service only hands out valid credentials,
    refreshing them transparently.
    """

    SCOPES = [
        "https://www.googleapis.com/auth/gmail.readonly",
    ]

    @staticmethod
    def get_valid_credentials(account: Account) -> Optional[Credentials]:
        """Get valid OAuth credentials, refreshing if necessary.

        Returns None when the account has no usable credential (no token, or the
        refresh grant was rejected). Raises TransientRemoteError when a refresh
        failed for a reason worth retrying (network, rate limit).
        """
        try:
            oauth_token = account.oauth_token
        except OAuthToken.DoesNotExist:
            return None

        # Use the scopes that were originally granted with this token
        token_scopes = oauth_token.get_scopes_list() or GmailOAuthService.SCOPES

        is_token_expired = oauth_token.is_expired()
        expires_soon = False
        if oauth_token.expires_at:
            time_until_expiry = oauth_token.expires_at - timezone.now()
            expires_soon = time_until_expiry.total_seconds() < REFRESH_MARGIN_SECONDS

        # If token is expired and we don't have a refresh token, fail fast
        if is_token_expired and not oauth_token.refresh_token:
            return None

        credentials = Credentials(
            token=oauth_token.access_token,
            refresh_token=oauth_token.refresh_token,
            token_uri=TOKEN_URI,
            client_id=settings.GOOGLE_OAUTH_CLIENT_ID,
            client_secret=settings.GOOGLE_OAUTH_CLIENT_SECRET,
            scopes=token_scopes,
        )

        # google-auth compares expiry against a naive UTC datetime
        if oauth_token.expires_at:
            credentials.expiry = timezone.make_naive(oauth_token.expires_at, utc_tz.utc)

        if (is_token_expired or expires_soon) and credentials.refresh_token:
            try:
                credentials.refresh(Request())
            except TransportError as e:
                logger.warning("Gmail token refresh failed (transient) for account %s: %s", account.pk, e)
                raise TransientRemoteError(f"Token refresh failed: {e}") from e
            except RefreshError as e:
                error_str = str(e).lower()
                if any(keyword in error_str for keyword in PERMANENT_REFRESH_ERRORS):
                    logger.warning("Gmail refresh token invalid for account %s: %s", account.pk, e)
                    GmailOAuthService.disconnect_account(account)
                    return None
                logger.warning("Gmail token refresh failed (non-fatal) for account %s: %s", account.pk, e)
                raise TransientRemoteError(f"Token refresh failed: {e}") from e

            GmailOAuthService._store_refreshed(oauth_token, credentials)
            logger.info("Gmail token refreshed for account %s", account.pk)

        return credentials

    @staticmethod
    def _store_refreshed(oauth_token: OAuthToken, credentials: Credentials) -> None:
        oauth_token.access_token = credentials.token
        # Always save the refresh token in case it was rotated
        if credentials.refresh_token:
            oauth_token.refresh_token = credentials.refresh_token
        if credentials.expiry:
            expiry = credentials.expiry
            oauth_token.expires_at = (
                timezone.make_aware(expiry, utc_tz.utc) if timezone.is_naive(expiry) else expiry
            )
        if credentials.scopes:
            oauth_token.set_scopes_list(list(credentials.scopes))
        oauth_token.save()

    @staticmethod
    def disconnect_account(account: Account):
        """Disconnect account and remove OAuth token"""
        OAuthToken.objects.filter(account=account).delete()
        account.is_connected = False
        account.save(update_fields=["is_connected", "updated_at"])
