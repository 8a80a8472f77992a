"""Short-lived per-account sync state in the cache: dispatch lock and last error."""
from django.core.cache import cache

LAST_SYNC_ERROR_KEY = "mail:last_sync_error:{account_id}"
DISPATCH_LOCK_KEY = "mail:dispatch_lock:{account_id}"
LAST_SYNC_ERROR_TIMEOUT = 86400  # 24 hours
LAST_SYNC_ERROR_MAX_LENGTH = 500


def set_last_sync_error(account_id: int, error_message: str) -> None:
    cache.set(
        LAST_SYNC_ERROR_KEY.format(account_id=account_id),
        (error_message or "")[:LAST_SYNC_ERROR_MAX_LENGTH],
        LAST_SYNC_ERROR_TIMEOUT,
    )


def clear_last_sync_error(account_id: int) -> None:
    cache.delete(LAST_SYNC_ERROR_KEY.format(account_id=account_id))


def get_last_sync_error(account_id: int) -> str:
    return cache.get(LAST_SYNC_ERROR_KEY.format(account_id=account_id)) or ""


def acquire_dispatch_lock(account_id: int, timeout_seconds: int = 30) -> bool:
    """
    Acquire an account-scoped lock around the coordinator's decide-and-dispatch.
    Returns True if acquired; False if another coordinator call holds it.
    """
    return bool(
        cache.add(
            DISPATCH_LOCK_KEY.format(account_id=account_id),
            "1",
            timeout=timeout_seconds,
        )
    )


def release_dispatch_lock(account_id: int) -> None:
    cache.delete(DISPATCH_LOCK_KEY.format(account_id=account_id))
