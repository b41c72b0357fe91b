from dataclasses import dataclass
from typing import Optional


@dataclass(frozen=True)
class PickupLocation:
    id: str
    name: str
    address: str
    instructions: Optional[str] = None


PICKUP_LOCATIONS = {
    loc.id: loc
    for loc in (
        PickupLocation(
            id="slc-hq",
            name="SALT LAKE HQ",
            address="5167 W 1730 S, Salt Lake City, UT 84104",
            instructions=(
                "Entrance is in the NorthEast corner of the building. "
                "Our team will assist you with loading."
            ),
        ),
        PickupLocation(
            id="slc-outlet",
            name="SALT LAKE OUTLET",
            address="2345 S. Main Street, Salt Lake City, UT 84115",
            instructions="Check in at the front desk when you arrive. Our team will assist you with loading.",
        ),
        PickupLocation(
            id="boise-willcall",
            name="BOISE WILL CALL",
            address="627 N. Dupont Ave. Boise, ID 83713",
            instructions="Check in at the front desk when you arrive. Our team will assist you with loading.",
        ),
    )
}


def get_pickup_location(location_id: Optional[str]) -> Optional[PickupLocation]:
    if not location_id:
        return None
    return PICKUP_LOCATIONS.get(location_id)
