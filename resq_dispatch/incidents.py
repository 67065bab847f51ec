"""
Incident write operations: report, status change, verification, deletion.

Write failures are raised as :class:`IncidentWriteError` with the failed
operation in the message. The single-incident lookup is a read and fails
soft.
"""

import logging

from .backend import Backend, BackendError, OperationError
from .images import DEFAULT_BUCKET, delete_incident_image, upload_incident_image
from .models import Incident, IncidentStatus, ReportIncidentInput
from .normalizer import map_incident_row

logger = logging.getLogger(__name__)

# Compare-and-set rounds before a contended verification gives up
VERIFY_ATTEMPTS = 5


class IncidentWriteError(OperationError):
    """An incident write was rejected by the backend."""

    def __init__(self, operation: str, reason: str, cause: BackendError | None = None):
        self.operation = operation
        super().__init__(reason, cause)


async def report_incident(
    backend: Backend, report: ReportIncidentInput, bucket: str = DEFAULT_BUCKET
) -> str:
    """Report a new incident and return the backend assigned ID.

    The photo, if any, is uploaded first so its URL can be stored with the
    incident. If the incident cannot be created the uploaded photo is removed
    again.

    Raises:
        ImageUploadError: When the photo is rejected or cannot be uploaded
        IncidentWriteError: When the incident cannot be created
    """
    image_url = None
    if report.image is not None:
        image_url = await upload_incident_image(backend, report.image, bucket)

    result = await backend.rpc(
        "report_incident",
        {
            "p_type": report.type.value,
            "p_severity": report.severity.value,
            "p_description": report.description,
            "p_lat": report.lat,
            "p_lng": report.lng,
            "p_address": report.address or None,
            "p_reported_by_name": report.reported_by_name or "Anonymous",
            "p_image_url": image_url,
        },
    )

    if not result.ok or result.data is None:
        error = IncidentWriteError(
            "report incident",
            result.error.message if result.error else "No ID returned",
            result.error,
        )
        logger.error(str(error))
        if image_url:
            try:
                await delete_incident_image(backend, image_url, bucket)
            except OperationError as e:
                logger.warning(f"Could not remove orphaned image {image_url}: {e}")
        raise error

    incident_id = str(result.data)
    logger.info(
        f"Reported incident {incident_id}",
        extra={"incident_id": incident_id, "type": report.type.value},
    )
    return incident_id


async def update_incident_status(
    backend: Backend, incident_id: str, status: IncidentStatus
) -> None:
    """Change an incident's status.

    Raises:
        IncidentWriteError: When the update fails
    """
    result = await backend.update(
        "incidents", {"status": IncidentStatus(status).value}, eq={"id": incident_id}
    )
    if not result.ok:
        logger.error(f"Error updating status of incident {incident_id}: {result.error}")
        raise IncidentWriteError("update incident status", result.error.message, result.error)

    logger.info(f"Incident {incident_id} status set to {IncidentStatus(status).value}")


async def verify_incident(backend: Backend, incident_id: str) -> int:
    """Add one verification to an incident.

    The count is written with a compare-and-set on the value that was read,
    so concurrent verifications never overwrite each other. A lost race
    re-reads and tries again.

    Returns:
        The new verification count

    Raises:
        IncidentWriteError: When the incident cannot be read or updated
    """
    for attempt in range(VERIFY_ATTEMPTS):
        current = await backend.select(
            "incidents", columns="verification_count", eq={"id": incident_id}
        )
        if not current.ok:
            raise IncidentWriteError("verify incident", current.error.message, current.error)
        if not current.data:
            raise IncidentWriteError("verify incident", f"incident {incident_id} not found")

        count = current.data[0].get("verification_count")
        new_count = (count or 0) + 1

        result = await backend.update(
            "incidents",
            {"verification_count": new_count},
            eq={"id": incident_id, "verification_count": count},
        )
        if not result.ok:
            raise IncidentWriteError("verify incident", result.error.message, result.error)
        if result.data:
            logger.info(f"Incident {incident_id} verification count is now {new_count}")
            return new_count

        logger.info(
            f"Verification count of incident {incident_id} changed concurrently, "
            f"retrying (attempt {attempt + 1}/{VERIFY_ATTEMPTS})"
        )

    raise IncidentWriteError(
        "verify incident",
        f"verification count of incident {incident_id} could not be updated",
    )


async def delete_incident(backend: Backend, incident_id: str) -> None:
    """Delete an incident (administrators only).

    Raises:
        IncidentWriteError: When the delete fails or removed nothing
    """
    result = await backend.delete("incidents", eq={"id": incident_id})
    if not result.ok:
        logger.error(f"Error deleting incident {incident_id}: {result.error}")
        raise IncidentWriteError("delete incident", result.error.message, result.error)
    if result.data == []:
        raise IncidentWriteError(
            "delete incident", f"incident {incident_id} not found or not permitted"
        )

    logger.info(f"Deleted incident {incident_id}")


async def get_incident_by_id(backend: Backend, incident_id: str) -> Incident | None:
    """Fetch one incident; None when it does not exist or cannot be read."""
    result = await backend.select("incidents", eq={"id": incident_id})
    if not result.ok:
        logger.error(f"Error fetching incident {incident_id}: {result.error}")
        return None
    if not result.data:
        return None
    return map_incident_row(result.data[0])
