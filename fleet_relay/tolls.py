"""Toll class mapping and per-km toll cost estimation.

Pure functions: the upstream adapters and the engine's direct-line
fallback both go through here, so the same inputs always give the same
estimate.
"""

import math
from typing import Optional

from fleet_relay.models import TollInfo, TruckSpecs

# Share of a route assumed to run on toll roads when the provider can't say.
DEFAULT_TOLL_FRACTION = 0.6

# Average toll tariff per km (IDR) by vehicle class (Golongan I–V)
TOLL_RATE_PER_KM = {
    1: 900,    # sedan, jeep, pick-up, small truck
    2: 1350,   # truck, 2 axles
    3: 1800,   # truck, 3 axles
    4: 2250,   # truck, 4 axles
    5: 2700,   # truck, 5+ axles
}

_CLASS_LABELS = {1: "I", 2: "II", 3: "III", 4: "IV", 5: "V"}

TRUCK_MODES = {"driving-hgv", "truck", "hgv"}
MOTOR_MODES = TRUCK_MODES | {"driving-car", "car"}

DEFAULT_TRUCK_AXLES = 2


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def is_truck_mode(mode: Optional[str]) -> bool:
    return (mode or "") in TRUCK_MODES


def is_toll_mode(mode: Optional[str]) -> bool:
    return (mode or "driving-car") in MOTOR_MODES


def vehicle_class(mode: Optional[str], truck_specs: Optional[TruckSpecs] = None) -> int:
    """Toll class from transport mode and axle count. Cars are class 1."""
    if not is_truck_mode(mode):
        return 1
    axles = truck_specs.axles if truck_specs and truck_specs.axles else DEFAULT_TRUCK_AXLES
    if axles >= 5:
        return 5
    if axles == 4:
        return 4
    if axles == 3:
        return 3
    return 2


def rate_for_class(cls: int) -> int:
    return TOLL_RATE_PER_KM.get(cls, TOLL_RATE_PER_KM[1])


def class_label(cls: int) -> str:
    return _CLASS_LABELS.get(cls, str(cls))


def estimate_toll(
    distance_km: float,
    mode: Optional[str],
    truck_specs: Optional[TruckSpecs] = None,
    toll_distance_km: Optional[float] = None,
) -> TollInfo:
    """Estimated toll cost for a route of `distance_km`.

    When the tolled share is unknown, DEFAULT_TOLL_FRACTION of the total
    distance is assumed.
    """
    if toll_distance_km is None:
        toll_distance_km = distance_km * DEFAULT_TOLL_FRACTION
    cls = vehicle_class(mode, truck_specs)
    return TollInfo(
        uses_toll=True,
        vehicle_class=cls,
        vehicle_class_label=class_label(cls),
        estimated_cost=round_half_up(toll_distance_km * rate_for_class(cls)),
        toll_distance=toll_distance_km,
        is_estimated=True,
    )
