"""Database webhook intake feeding the realtime change feed."""

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException, status

from ..feed import InMemoryChangeFeed
from ..realtime import TABLES, RealtimeSync
from .deps import get_feed, get_realtime, verify_webhook_secret

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/realtime", tags=["realtime"])


@router.post(
    "/webhook",
    summary="Receive a database change",
    dependencies=[Depends(verify_webhook_secret)],
)
async def receive_change(
    payload: dict[str, Any] = Body(...),
    feed: InMemoryChangeFeed = Depends(get_feed),
) -> dict[str, Any]:
    """Accept a row change webhook and publish it to the table's subscribers.

    The sender must present the shared secret in ``X-Webhook-Secret``.
    """
    table = payload.get("table")
    if table not in TABLES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported table '{table}'",
        )

    delivered = feed.publish(table, payload)
    logger.debug(f"Change on '{table}' delivered to {delivered} subscribers")
    return {"success": True, "table": table, "delivered": delivered}


@router.get("/status", summary="Realtime sync status")
async def realtime_status(
    realtime: RealtimeSync | None = Depends(get_realtime),
) -> dict[str, Any]:
    if realtime is None:
        return {"status": "stopped", "is_running": False}
    return realtime.get_health_status()
