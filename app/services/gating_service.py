"""Eligibility rules deciding when an order may leave ``not_started`` at a stage.

Everything here is a pure function of the rows handed in. Callers load the
order's order-location rows inside the same transaction that applies the
transition, so the decision and the write see one snapshot.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from app.config import settings
from app.models import Location, Order, OrderLocation, OrderLocationStatus

TIER_GLOBAL_QUEUE = 'global_queue'
TIER_PRIOR_STAGE = 'prior_stage'

REASON_GLOBAL_QUEUE = 'Waiting for Global Queue'
REASON_PRIOR_STAGE = 'Waiting for prior location to start'


@dataclass(frozen=True)
class Eligibility:
    eligible: bool
    tier: str | None = None
    reason: str | None = None

    def as_dict(self) -> dict:
        return {'eligible': self.eligible, 'tier': self.tier, 'reason': self.reason}


ELIGIBLE = Eligibility(eligible=True)


def _location_map(locations: Iterable[Location] | Mapping[int, Location]) -> dict[int, Location]:
    if isinstance(locations, Mapping):
        return dict(locations)
    return {location.id: location for location in locations}


def entry_used_order(
    order_locations: Iterable[OrderLocation],
    locations: Iterable[Location] | Mapping[int, Location],
) -> int | None:
    """Lowest ``used_order`` among the order's selected locations."""
    by_id = _location_map(locations)
    used_orders = [by_id[row.location_id].used_order for row in order_locations if row.location_id in by_id]
    return min(used_orders) if used_orders else None


def has_global_admission(order: Order) -> bool:
    return order.global_queue_position is not None and order.global_queue_position > 0


def is_eligible(
    order: Order,
    location: Location,
    order_locations: Iterable[OrderLocation],
    locations: Iterable[Location] | Mapping[int, Location],
    *,
    entry_tier_max: int | None = None,
) -> Eligibility:
    """Tier A (global admission) and Tier B (every lower stage started)."""
    by_id = _location_map(locations)
    rows = [row for row in order_locations if row.order_id == order.id]
    entry_tier_max = settings.entry_tier_max_used_order if entry_tier_max is None else entry_tier_max

    entry = entry_used_order(rows, by_id)
    if (
        entry is not None
        and entry <= entry_tier_max
        and location.used_order == entry
        and not has_global_admission(order)
    ):
        return Eligibility(eligible=False, tier=TIER_GLOBAL_QUEUE, reason=REASON_GLOBAL_QUEUE)

    waiting_on = sorted(
        (
            by_id[row.location_id]
            for row in rows
            if row.location_id != location.id
            and row.location_id in by_id
            and by_id[row.location_id].used_order < location.used_order
            and row.status == OrderLocationStatus.NOT_STARTED
        ),
        key=lambda loc: (loc.used_order, loc.name),
    )
    if waiting_on:
        names = ', '.join(loc.name for loc in waiting_on)
        return Eligibility(eligible=False, tier=TIER_PRIOR_STAGE, reason=f'{REASON_PRIOR_STAGE}: {names}')

    return ELIGIBLE
