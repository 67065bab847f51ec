"""Shared route dependencies, set once by the application lifespan."""

import logging
import secrets

from fastapi import Header, HTTPException, status

from ..backend import Backend, OperationError
from ..config import config
from ..feed import InMemoryChangeFeed
from ..realtime import RealtimeSync
from ..store import ResQStore

logger = logging.getLogger(__name__)

# Global instances (will be set by main application)
_store: ResQStore | None = None
_backend: Backend | None = None
_feed: InMemoryChangeFeed | None = None
_realtime: RealtimeSync | None = None


def set_store(store: ResQStore | None) -> None:
    """Set the global store instance."""
    global _store
    _store = store


def set_backend(backend: Backend | None) -> None:
    """Set the global backend instance."""
    global _backend
    _backend = backend


def set_realtime(feed: InMemoryChangeFeed | None, realtime: RealtimeSync | None) -> None:
    """Set the change feed and the realtime sync fed by it."""
    global _feed, _realtime
    _feed = feed
    _realtime = realtime


def _unavailable(what: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=f"{what} not available",
    )


def get_store() -> ResQStore:
    """Dependency to get the store instance."""
    if _store is None:
        raise _unavailable("Store")
    return _store


def get_backend() -> Backend:
    """Dependency to get the backend instance."""
    if _backend is None:
        raise _unavailable("Backend")
    return _backend


def get_feed() -> InMemoryChangeFeed:
    """Dependency to get the change feed."""
    if _feed is None:
        raise _unavailable("Change feed")
    return _feed


def get_realtime() -> RealtimeSync | None:
    return _realtime


def verify_webhook_secret(x_webhook_secret: str | None = Header(None)) -> None:
    """Dependency rejecting webhooks without the configured shared secret."""
    if not config.webhook_secret:
        logger.error("Rejecting webhook, RESQ_WEBHOOK_SECRET is not configured")
        raise _unavailable("Webhook intake")
    if x_webhook_secret is None or not secrets.compare_digest(
        x_webhook_secret.encode(), config.webhook_secret.encode()
    ):
        logger.warning("Rejecting webhook with missing or invalid secret")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook secret",
        )


def operation_error(e: OperationError) -> HTTPException:
    """HTTP error for a failed write.

    Failures reported by the backend map to 502; failures detected before
    anything was sent (such as a rejected photo) map to 400.
    """
    code = (
        status.HTTP_502_BAD_GATEWAY
        if e.cause is not None
        else status.HTTP_400_BAD_REQUEST
    )
    return HTTPException(status_code=code, detail=str(e))
