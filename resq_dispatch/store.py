"""
Application state store.

The store is the single owner of the incident, unit and route collections.
Every mutation is synchronous and replaces the affected list in one
assignment, so readers never observe a half-applied change. Network work is
awaited first and folded in afterwards; once the store has been shut down,
results that arrive late are discarded.
"""

import asyncio
import logging
from collections.abc import Iterable, Sequence
from typing import Any

from .config import ResQConfig
from .dispatch import DispatchCommitError, DispatchService, DispatchStateError
from .models import (
    ALL_CATEGORIES,
    DispatchPhase,
    DispatchRoute,
    DispatchState,
    EmergencyUnit,
    Incident,
    IncidentStatus,
    IncidentType,
    UnitStatus,
)
from .service import IncidentService

logger = logging.getLogger(__name__)

IN_FLIGHT_PHASES = (DispatchPhase.PREVIEWING, DispatchPhase.COMMITTING)


def filter_incidents(incidents: list[Incident], category: str) -> list[Incident]:
    """Incidents of a category; ``all`` returns the given list itself.

    ``police`` and ``crime`` match each other. The input is never modified.
    """
    if category == ALL_CATEGORIES:
        return incidents
    return [incident for incident in incidents if incident.matches_category(category)]


def _patch_fields(model_cls: type, patch: dict[str, Any]) -> dict[str, Any]:
    return {
        key: value
        for key, value in patch.items()
        if key != "id" and key in model_cls.model_fields
    }


class ResQStore:
    """In-memory view of incidents, units and dispatch routes."""

    def __init__(
        self,
        service: IncidentService,
        dispatch_service: DispatchService,
        config: ResQConfig,
    ):
        """Initialize an empty store.

        Args:
            service: Read service used by the bulk loads
            dispatch_service: Dispatch workflow engine
            config: Configuration (load failure policy)
        """
        self.service = service
        self.dispatch_service = dispatch_service
        self.config = config

        # Entity collections
        self.incidents: list[Incident] = []
        self.units: list[EmergencyUnit] = []
        self.dispatch_routes: list[DispatchRoute] = []
        self.preview_routes: list[DispatchRoute] = []

        # Selection state
        self.active_filter: str = ALL_CATEGORIES
        self.selected_incident_id: str | None = None
        self.selected_units_for_dispatch: list[str] = []

        # Dispatch workflow
        self.dispatch_state = DispatchState()

        # Loading flags
        self.is_loading = False
        self.loading: dict[str, bool] = {
            "incidents": False,
            "units": False,
            "dispatch_routes": False,
        }

        self._alive = True

    @property
    def is_alive(self) -> bool:
        return self._alive

    def shutdown(self) -> None:
        """Retire the store; later load and dispatch results are discarded."""
        self._alive = False
        logger.info("Store shut down")

    # Lookups

    def get_incident(self, incident_id: str) -> Incident | None:
        return next((i for i in self.incidents if i.id == incident_id), None)

    def get_unit(self, unit_id: str) -> EmergencyUnit | None:
        return next((u for u in self.units if u.id == unit_id), None)

    @property
    def visible_incidents(self) -> list[Incident]:
        """Incidents matching the active category filter."""
        return filter_incidents(self.incidents, self.active_filter)

    @property
    def selected_incident(self) -> Incident | None:
        if self.selected_incident_id is None:
            return None
        return self.get_incident(self.selected_incident_id)

    # Collection replacement

    def set_incidents(self, incidents: Iterable[Incident]) -> None:
        self.incidents = list(incidents)

    def set_units(self, units: Iterable[EmergencyUnit]) -> None:
        self.units = list(units)

    def set_dispatch_routes(self, routes: Iterable[DispatchRoute]) -> None:
        self.dispatch_routes = list(routes)

    def set_preview_routes(self, routes: Iterable[DispatchRoute]) -> None:
        self.preview_routes = list(routes)

    # Single entity mutations

    def add_incident(self, incident: Incident) -> None:
        """Insert at the front, replacing any incident with the same ID."""
        self.incidents = [incident] + [i for i in self.incidents if i.id != incident.id]

    def add_unit(self, unit: EmergencyUnit) -> None:
        """Append, or replace in place a unit with the same ID."""
        if self.get_unit(unit.id) is not None:
            self.units = [unit if u.id == unit.id else u for u in self.units]
        else:
            self.units = self.units + [unit]

    def add_dispatch_route(self, route: DispatchRoute) -> None:
        """Append a confirmed route; a route with the same ID is replaced in place."""
        if route.id is not None and any(r.id == route.id for r in self.dispatch_routes):
            self.dispatch_routes = [
                route if r.id == route.id else r for r in self.dispatch_routes
            ]
        else:
            self.dispatch_routes = self.dispatch_routes + [route]

    def update_incident(self, incident_id: str, patch: dict[str, Any]) -> Incident | None:
        """Merge ``patch`` into an incident.

        The ID never changes and fields absent from the patch are left alone.
        Unknown incident IDs are a no-op.

        Returns:
            The updated incident, or None when no incident has that ID
        """
        current = self.get_incident(incident_id)
        if current is None:
            logger.debug(f"Ignoring update for unknown incident {incident_id}")
            return None

        updated = current.model_copy(update=_patch_fields(Incident, patch))
        self.incidents = [updated if i.id == incident_id else i for i in self.incidents]
        return updated

    def update_unit(self, unit_id: str, patch: dict[str, Any]) -> EmergencyUnit | None:
        """Merge ``patch`` into a unit. Same rules as :meth:`update_incident`."""
        current = self.get_unit(unit_id)
        if current is None:
            logger.debug(f"Ignoring update for unknown unit {unit_id}")
            return None

        updated = current.model_copy(update=_patch_fields(EmergencyUnit, patch))
        self.units = [updated if u.id == unit_id else u for u in self.units]
        return updated

    def remove_incident(self, incident_id: str) -> None:
        self.incidents = [i for i in self.incidents if i.id != incident_id]
        if self.selected_incident_id == incident_id:
            self.selected_incident_id = None

    def remove_unit(self, unit_id: str) -> None:
        self.units = [u for u in self.units if u.id != unit_id]
        if unit_id in self.selected_units_for_dispatch:
            self.selected_units_for_dispatch = [
                u for u in self.selected_units_for_dispatch if u != unit_id
            ]

    def remove_dispatch_route(self, route_id: str) -> None:
        self.dispatch_routes = [r for r in self.dispatch_routes if r.id != route_id]

    def clear_dispatch_routes_for_incident(self, incident_id: str) -> None:
        self.dispatch_routes = [
            r for r in self.dispatch_routes if r.incident_id != incident_id
        ]

    def clear_preview_routes(self) -> None:
        self.preview_routes = []

    # Selection

    def set_active_filter(self, category: str) -> None:
        """Set the category filter (``all`` or an incident type)."""
        if category != ALL_CATEGORIES:
            category = IncidentType(category).value
        self.active_filter = category

    def _invalidate_preview(self) -> None:
        # An in-flight workflow owns its state until it settles
        if self.dispatch_state.phase in IN_FLIGHT_PHASES:
            return
        self.clear_preview_routes()
        self._reset_dispatch()

    def set_selected_incident(self, incident_id: str | None) -> None:
        """Select an incident; changing it discards any preview."""
        if incident_id != self.selected_incident_id:
            self._invalidate_preview()
        self.selected_incident_id = incident_id

    def set_selected_units(self, unit_ids: Sequence[str]) -> None:
        unit_ids = list(dict.fromkeys(unit_ids))
        if unit_ids != self.selected_units_for_dispatch:
            self._invalidate_preview()
        self.selected_units_for_dispatch = unit_ids

    def toggle_unit_selection(self, unit_id: str) -> None:
        self._invalidate_preview()
        if unit_id in self.selected_units_for_dispatch:
            self.selected_units_for_dispatch = [
                u for u in self.selected_units_for_dispatch if u != unit_id
            ]
        else:
            self.selected_units_for_dispatch = self.selected_units_for_dispatch + [unit_id]

    # Bulk loads

    async def _load(self, key: str, fetch, apply) -> None:
        if not self._alive:
            return

        self.loading[key] = True
        try:
            items = await fetch()
        except Exception as e:
            logger.error(f"Failed to load {key}: {e}")
            if self._alive and self.config.clear_on_load_failure:
                logger.warning(f"Clearing {key} after failed load")
                apply([])
            return
        finally:
            self.loading[key] = False

        if not self._alive:
            logger.debug(f"Discarding {key} load result, store is shut down")
            return

        apply(items)
        logger.info(f"Loaded {len(items)} {key.replace('_', ' ')}")

    async def load_incidents(self) -> None:
        """Replace incidents with a fresh fetch. Never raises."""
        await self._load("incidents", self.service.fetch_incidents, self.set_incidents)

    async def load_units(self) -> None:
        """Replace units with a fresh fetch. Never raises."""
        await self._load("units", self.service.fetch_units, self.set_units)

    async def load_dispatch_routes(self) -> None:
        """Replace confirmed routes with a fresh fetch. Never raises."""
        await self._load(
            "dispatch_routes",
            self.service.fetch_dispatch_routes,
            self.set_dispatch_routes,
        )

    async def load_all(self) -> None:
        """Run the three bulk loads concurrently. Never raises."""
        self.is_loading = True
        try:
            results = await asyncio.gather(
                self.load_incidents(),
                self.load_units(),
                self.load_dispatch_routes(),
                return_exceptions=True,
            )
            for result in results:
                if isinstance(result, BaseException):
                    logger.error(f"Unexpected error during initial load: {result}")
        finally:
            self.is_loading = False

    # Dispatch workflow

    def _check_not_in_flight(self, action: str) -> None:
        if self.dispatch_state.phase in IN_FLIGHT_PHASES:
            raise DispatchStateError(
                f"Cannot {action} while dispatch is {self.dispatch_state.phase.value}"
            )

    def _reset_dispatch(self, error: str | None = None) -> None:
        self.dispatch_state = DispatchState(error=error)

    async def perform_preview_dispatch(
        self, incident_id: str, unit_ids: Sequence[str] | None = None
    ) -> list[DispatchRoute]:
        """Preview routes for the selected (or given) units.

        Raises:
            DispatchStateError: When a preview or commit is already in flight
        """
        self._check_not_in_flight("preview")
        unit_ids = list(unit_ids if unit_ids is not None else self.selected_units_for_dispatch)

        self.dispatch_state = DispatchState(
            phase=DispatchPhase.PREVIEWING, incident_id=incident_id, unit_ids=unit_ids
        )
        try:
            routes = await self.dispatch_service.preview_dispatch(incident_id, unit_ids)
        except Exception as e:
            logger.error(f"Preview for incident {incident_id} failed: {e}")
            routes = []

        if not self._alive:
            logger.debug(f"Discarding preview for incident {incident_id}, store is shut down")
            return routes

        if not routes:
            self.clear_preview_routes()
            self._reset_dispatch(error="No routes could be previewed")
            return routes

        self.set_preview_routes(routes)
        self.selected_units_for_dispatch = unit_ids
        self.dispatch_state = self.dispatch_state.model_copy(
            update={"phase": DispatchPhase.PREVIEWED}
        )
        return routes

    async def perform_commit_dispatch(
        self, incident_id: str, unit_ids: Sequence[str] | None = None
    ) -> list[DispatchRoute]:
        """Commit a dispatch and reflect it locally.

        On success the confirmed routes are appended, previews and selection
        are cleared, the incident becomes ``responding`` with the units
        assigned, and every unit becomes ``dispatched``. On failure nothing but
        the workflow state changes.

        Raises:
            DispatchStateError: When a preview or commit is already in flight
            DispatchCommitError: When the backend rejects the dispatch
        """
        self._check_not_in_flight("commit")
        if unit_ids is None:
            previewed = (
                self.dispatch_state.phase == DispatchPhase.PREVIEWED
                and self.dispatch_state.incident_id == incident_id
            )
            unit_ids = (
                self.dispatch_state.unit_ids if previewed else self.selected_units_for_dispatch
            )
        unit_ids = list(unit_ids)

        self.dispatch_state = DispatchState(
            phase=DispatchPhase.COMMITTING, incident_id=incident_id, unit_ids=unit_ids
        )
        try:
            routes = await self.dispatch_service.commit_dispatch(incident_id, unit_ids)
        except DispatchCommitError as e:
            if self._alive:
                self._reset_dispatch(error=str(e))
            raise
        except Exception as e:
            error = DispatchCommitError(str(e))
            if self._alive:
                self._reset_dispatch(error=str(error))
            raise error from e

        if not self._alive:
            logger.debug(f"Discarding commit for incident {incident_id}, store is shut down")
            return routes

        for route in routes:
            self.add_dispatch_route(route)
        self.clear_preview_routes()
        self.selected_units_for_dispatch = []

        incident = self.get_incident(incident_id)
        if incident is not None:
            assigned = list(dict.fromkeys([*incident.assigned_units, *unit_ids]))
            self.update_incident(
                incident_id,
                {"status": IncidentStatus.RESPONDING, "assigned_units": assigned},
            )
        for unit_id in unit_ids:
            self.update_unit(unit_id, {"status": UnitStatus.DISPATCHED})

        self._reset_dispatch()
        logger.info(
            f"Dispatched {len(unit_ids)} units to incident {incident_id}",
            extra={"incident_id": incident_id, "unit_ids": unit_ids},
        )
        return routes

    def cancel_dispatch(self) -> None:
        """Discard previews and selection and return to idle."""
        self.clear_preview_routes()
        self.selected_units_for_dispatch = []
        self._reset_dispatch()

    def get_statistics(self) -> dict[str, Any]:
        """Collection sizes and workflow state."""
        return {
            "incidents": len(self.incidents),
            "units": len(self.units),
            "dispatch_routes": len(self.dispatch_routes),
            "preview_routes": len(self.preview_routes),
            "active_filter": self.active_filter,
            "dispatch_phase": self.dispatch_state.phase.value,
            "is_loading": self.is_loading,
            "is_alive": self._alive,
        }
