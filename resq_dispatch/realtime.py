"""
Realtime merge layer.

Subscribes one change channel per table and folds each change event into the
store. Rows coming from the feed go through the same mapping and coordinate
validation as bulk loads, so a malformed event can never put an unplaceable
entity into the store.

Each channel is drained by its own task: events of one table are applied in
delivery order while tables interleave freely. A failing event handler is
logged and skipped; a failing channel ends only its own task.
"""

import asyncio
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from pydantic import ValidationError

from .backend import ChangeChannel, ChangeFeed
from .geo import extract_coordinates
from .models import ChangeEvent, ChangeEventType, GeoPoint, Incident
from .normalizer import map_dispatch_row, map_incident_row, map_unit_row, normalize_unit_status
from .store import ResQStore

logger = logging.getLogger(__name__)

TABLES = ("incidents", "units", "dispatches")

# Fields an incident UPDATE may change: backend column -> model field
INCIDENT_MERGE_FIELDS = {
    "status": "status",
    "severity": "severity",
    "is_verified": "is_verified",
    "verification_count": "verification_count",
    "assigned_unit_ids": "assigned_units",
    "assigned_units": "assigned_units",
}

CLOSED_DISPATCH_STATUSES = ("completed", "cancelled")


class RealtimeSync:
    """Keeps a store in step with the backend's row change feed."""

    def __init__(self, store: ResQStore, feed: ChangeFeed, tables: tuple[str, ...] = TABLES):
        self.store = store
        self.feed = feed
        self.tables = tables

        self._channels: dict[str, ChangeChannel] = {}
        self._tasks: dict[str, asyncio.Task] = {}
        self._handlers: dict[str, Callable[[ChangeEvent], bool]] = {
            "incidents": self._handle_incident_event,
            "units": self._handle_unit_event,
            "dispatches": self._handle_dispatch_event,
        }

        # Health metrics
        self._stats: dict[str, dict[str, int]] = {
            table: {"processed": 0, "dropped": 0, "failed": 0} for table in tables
        }
        self._channel_failures = 0
        self._last_event_at: datetime | None = None

    @property
    def is_running(self) -> bool:
        return bool(self._channels)

    @property
    def subscriptions(self) -> dict[str, ChangeChannel]:
        return dict(self._channels)

    async def start(self) -> bool:
        """Subscribe to every table and start the consumer tasks.

        Returns:
            True when all subscriptions are open. On any subscribe failure the
            channels opened so far are closed and False is returned.
        """
        if self._channels:
            logger.warning("Realtime sync already started")
            return True

        opened: dict[str, ChangeChannel] = {}
        try:
            for table in self.tables:
                opened[table] = await self.feed.subscribe(table)
        except Exception as e:
            logger.error(f"Failed to subscribe to realtime changes: {e}")
            for table, channel in opened.items():
                try:
                    await channel.unsubscribe()
                except Exception as close_error:
                    logger.error(f"Failed to close '{table}' channel: {close_error}")
            return False

        self._channels = opened
        for table, channel in opened.items():
            self._tasks[table] = asyncio.create_task(
                self._consume(table, channel), name=f"realtime-{table}"
            )
        logger.info(f"Realtime sync started for {', '.join(opened)}")
        return True

    async def stop(self) -> None:
        """Unsubscribe every channel and stop the consumer tasks."""
        try:
            for table, channel in self._channels.items():
                try:
                    await channel.unsubscribe()
                except Exception as e:
                    logger.error(f"Failed to unsubscribe '{table}' channel: {e}")

            for task in self._tasks.values():
                if not task.done():
                    task.cancel()
            if self._tasks:
                await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        finally:
            self._channels.clear()
            self._tasks.clear()
            logger.info("Realtime sync stopped")

    async def _consume(self, table: str, channel: ChangeChannel) -> None:
        try:
            async for payload in channel:
                self.handle_event(table, payload)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._channel_failures += 1
            logger.error(f"Realtime channel for '{table}' failed: {e}")
        else:
            logger.debug(f"Realtime channel for '{table}' closed")

    def handle_event(self, table: str, payload: dict[str, Any]) -> bool:
        """Apply one raw change payload to the store.

        Returns:
            True if the store was changed. Dropped and failed events return
            False; nothing is raised.
        """
        stats = self._stats.setdefault(table, {"processed": 0, "dropped": 0, "failed": 0})
        self._last_event_at = datetime.now(UTC)
        try:
            handler = self._handlers.get(table)
            if handler is None:
                logger.warning(f"No realtime handler for table '{table}'")
                stats["dropped"] += 1
                return False

            applied = handler(ChangeEvent.from_payload(payload))
        except Exception as e:
            stats["failed"] += 1
            logger.error(f"Error handling '{table}' change event: {e}", exc_info=True)
            return False

        stats["processed" if applied else "dropped"] += 1
        return applied

    # Incidents

    def _handle_incident_event(self, event: ChangeEvent) -> bool:
        if event.event_type == ChangeEventType.INSERT:
            incident = map_incident_row(event.new)
            if incident is None:
                logger.warning(f"Dropping realtime insert of incident {event.new.get('id')}")
                return False
            self.store.add_incident(incident)
            return True

        if event.event_type == ChangeEventType.UPDATE:
            return self._merge_incident_update(event.new)

        return self._remove(event, self.store.remove_incident, "incident")

    def _merge_incident_update(self, row: dict[str, Any]) -> bool:
        incident_id = row.get("id")
        if extract_coordinates(row) is None:
            logger.warning(f"Dropping realtime update of incident {incident_id} - invalid coordinates")
            return False

        current = self.store.get_incident(str(incident_id))
        if current is None:
            logger.debug(f"Realtime update for unknown incident {incident_id}")
            return False

        patch = {
            field: row[column]
            for column, field in INCIDENT_MERGE_FIELDS.items()
            if column in row and row[column] is not None
        }
        if not patch:
            return False

        try:
            merged = Incident.model_validate({**current.model_dump(), **patch})
        except ValidationError as e:
            logger.warning(f"Dropping realtime update of incident {incident_id}: {e}")
            return False

        self.store.update_incident(current.id, {field: getattr(merged, field) for field in patch})
        return True

    # Units

    def _handle_unit_event(self, event: ChangeEvent) -> bool:
        if event.event_type == ChangeEventType.INSERT:
            unit = map_unit_row(event.new)
            if unit is None:
                logger.warning(f"Dropping realtime insert of unit {event.new.get('id')}")
                return False
            self.store.add_unit(unit)
            return True

        if event.event_type == ChangeEventType.UPDATE:
            return self._merge_unit_update(event.new)

        return self._remove(event, self.store.remove_unit, "unit")

    def _merge_unit_update(self, row: dict[str, Any]) -> bool:
        unit_id = row.get("id")
        coords = extract_coordinates(row)
        if coords is None:
            logger.warning(f"Dropping realtime update of unit {unit_id} - invalid coordinates")
            return False

        try:
            patch = {"location": GeoPoint(lat=coords.lat, lng=coords.lng)}
            if row.get("status") or "is_available" in row:
                patch["status"] = normalize_unit_status(row)
        except (ValidationError, ValueError) as e:
            logger.warning(f"Dropping realtime update of unit {unit_id}: {e}")
            return False

        return self.store.update_unit(str(unit_id), patch) is not None

    # Dispatches

    def _handle_dispatch_event(self, event: ChangeEvent) -> bool:
        if event.event_type == ChangeEventType.DELETE:
            return self._remove(event, self.store.remove_dispatch_route, "dispatch")

        row = event.new
        if row.get("status") in CLOSED_DISPATCH_STATUSES:
            if event.event_type == ChangeEventType.UPDATE and row.get("id") is not None:
                self.store.remove_dispatch_route(str(row["id"]))
                return True
            return False

        self.store.add_dispatch_route(map_dispatch_row(row))
        return True

    def _remove(self, event: ChangeEvent, remove: Callable[[str], None], kind: str) -> bool:
        entity_id = event.old.get("id")
        if entity_id is None:
            logger.warning(f"Realtime delete of {kind} without ID")
            return False
        remove(str(entity_id))
        return True

    def get_health_status(self) -> dict[str, Any]:
        """Current subscription state and per-table event counters."""
        failed = sum(stats["failed"] for stats in self._stats.values())
        dead_channels = [table for table, task in self._tasks.items() if task.done()]

        status = "healthy"
        if not self._channels:
            status = "stopped"
        elif dead_channels:
            status = "degraded"
        elif failed:
            status = "degraded"

        return {
            "status": status,
            "is_running": self.is_running,
            "subscribed_tables": list(self._channels),
            "dead_channels": dead_channels,
            "channel_failures": self._channel_failures,
            "last_event_at": self._last_event_at.isoformat() if self._last_event_at else None,
            "tables": {table: dict(stats) for table, stats in self._stats.items()},
        }
