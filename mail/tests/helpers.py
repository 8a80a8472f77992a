from unittest.mock import Mock

from accounts.models import Account, Provider
from mail.services import GmailService


def make_account(email="test@example.com", **fields):
    defaults = {"provider": Provider.GMAIL, "is_connected": True}
    defaults.update(fields)
    return Account.objects.create(email=email, **defaults)


def make_synced_account(email="synced@example.com", cursor="1000", **fields):
    """An account eligible for incremental sync."""
    return make_account(
        email=email,
        initial_sync_completed=True,
        label_sync_completed=True,
        history_cursor=cursor,
        **fields,
    )


def mock_gmail():
    return Mock(spec=GmailService)


def gmail_message(message_id, thread_id="thread-1", label_ids=("INBOX",), internal_date="1700000000000", **extra):
    """A minimal Gmail message resource in format=full."""
    data = {
        "id": message_id,
        "threadId": thread_id,
        "historyId": "2001",
        "labelIds": list(label_ids),
        "snippet": f"Snippet for {message_id}",
        "sizeEstimate": 1234,
        "payload": {
            "partId": "",
            "mimeType": "multipart/alternative",
            "headers": [
                {"name": "Subject", "value": f"Subject {message_id}"},
                {"name": "From", "value": "Alice Example <alice@example.com>"},
                {"name": "Date", "value": "Tue, 14 Nov 2023 22:13:20 +0000"},
            ],
            "body": {"size": 0},
            "parts": [
                {
                    "partId": "0",
                    "mimeType": "text/plain",
                    "filename": "",
                    "body": {"size": 5, "data": "aGVsbG8="},
                },
                {
                    "partId": "1",
                    "mimeType": "text/html",
                    "filename": "",
                    "body": {"size": 12, "data": "PGI-aGVsbG88L2I-"},
                },
            ],
        },
    }
    if internal_date is not None:
        data["internalDate"] = internal_date
    data.update(extra)
    return data
