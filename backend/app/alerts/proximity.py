"""
proximity.py — Nearby-device selection for hyper-local push.

Determines which registered devices are close enough to an alert to be
told about it, using the Haversine maths from spatial.radius_utils.

═══════════════════════════════════════════════════════════════════════════
SELECTION RULE
═══════════════════════════════════════════════════════════════════════════

A device qualifies if all of:

    haversine(alert_location, device.last_location) ≤ radius_meters
    device owner ≠ alert originator     (legacy OR canonical id form)
    device.device_token is not null

For large device lists, a bounding-box pre-filter eliminates most
candidates before running the trig in Haversine:

    Step 1 — Compute bounding box (lat_min, lat_max, lon_min, lon_max)
    Step 2 — Reject devices outside the box (simple float comparison)
    Step 3 — Run Haversine only on candidates inside the box

The box is skipped when it touches the antimeridian, where clamping to
±180° would wrongly reject points on the other side.

Malformed locations (missing, non-numeric, out of range) are logged and
skipped; one bad registration never aborts the scan.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

from backend.app.alerts.models import DeviceRegistration
from backend.app.alerts.store import AlertStore
from backend.app.spatial.radius_utils import (
    Coordinate,
    bounding_box,
    inside_bbox,
    is_inside_radius,
)

logger = logging.getLogger(__name__)

DEFAULT_RADIUS_METERS = 1000.0


def _is_originator(device: DeviceRegistration, exclude_user_id: Optional[str]) -> bool:
    if not exclude_user_id:
        return False
    exclude = str(exclude_user_id)
    if device.legacy_user_id is not None and str(device.legacy_user_id) == exclude:
        return True
    return device.user_id is not None and str(device.user_id) == exclude


def filter_nearby_devices(
    devices: List[DeviceRegistration],
    origin: Coordinate,
    exclude_user_id: Optional[str],
    radius_meters: float = DEFAULT_RADIUS_METERS,
) -> List[str]:
    """
    Device tokens within `radius_meters` of `origin` (inclusive).

    Parameters
    ----------
    devices : list of DeviceRegistration
        Candidates; entries without a location or token never qualify.
    origin : Coordinate
        Alert location.
    exclude_user_id : str | None
        Alert originator, in legacy or canonical form.
    radius_meters : float
        Must be positive.

    Returns
    -------
    list of str
        Qualifying tokens, in candidate order. Not de-duplicated.

    Examples
    --------
    >>> from backend.app.alerts.models import LastLocation
    >>> near = DeviceRegistration("a" * 32, "U2", "tok-near", LastLocation(0, 0.005))
    >>> far = DeviceRegistration("b" * 32, "U3", "tok-far", LastLocation(0, 0.02))
    >>> filter_nearby_devices([near, far], Coordinate(0, 0), "U1", 1000)
    ['tok-near']
    """
    box = bounding_box(origin, radius_meters)
    use_box = box[2] > -180.0 and box[3] < 180.0

    tokens: List[str] = []
    skipped = 0

    for device in devices:
        if not device.device_token or device.last_location is None:
            continue
        if _is_originator(device, exclude_user_id):
            continue

        try:
            point = Coordinate.from_mapping(device.last_location)
        except (ValueError, TypeError) as exc:
            skipped += 1
            logger.warning(
                "Skipping device of user %s: bad location (%s)",
                device.user_id, exc,
            )
            continue

        # Fast rejection via bounding box
        if use_box and not inside_bbox(point, box):
            continue

        inside, _ = is_inside_radius(origin, point, radius_meters)
        if inside:
            tokens.append(device.device_token)

    logger.info(
        "Proximity scan: %d of %d device(s) within %.0f m (%d skipped)",
        len(tokens), len(devices), radius_meters, skipped,
    )
    return tokens


class ProximitySelector:
    """Scans the store's located devices around an alert location."""

    def __init__(self, store: AlertStore, radius_meters: float = DEFAULT_RADIUS_METERS):
        self.store = store
        self.radius_meters = radius_meters

    async def select_nearby_devices(
        self,
        origin: Any,
        exclude_user_id: Optional[str],
        radius_meters: Optional[float] = None,
    ) -> List[str]:
        """`origin` is a Coordinate, GeoPoint or {latitude, longitude} mapping."""
        if not isinstance(origin, Coordinate):
            origin = Coordinate.from_mapping(origin)
        devices = await self.store.list_located_devices()
        return filter_nearby_devices(
            devices,
            origin,
            exclude_user_id,
            radius_meters if radius_meters is not None else self.radius_meters,
        )
