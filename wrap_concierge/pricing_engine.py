from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional, Union

from .entity_extractor import Vehicle
from .resource_loader import PricingTable
from .utils import normalize_model_key

BLOCK_MODEL_MISSING = "model_missing"
BLOCK_UNRECOGNIZED_MODEL = "unrecognized_model"


@dataclass(frozen=True)
class PriceQuote:
    model_key: str
    sqft: int
    unit_rate: float
    cost: int

    def to_state(self) -> dict:
        return {"sqft": self.sqft, "cost": self.cost, "model_key": self.model_key}


@dataclass(frozen=True)
class PricingBlocked:
    """Refusal to price: the vehicle is not in the table, so no number is produced."""
    reason: str
    model_key: str = ""


@dataclass(frozen=True)
class FleetEstimate:
    vehicle_count: int
    total_sqft: int
    subtotal: int
    discount_percent: int
    total: int


PricingResult = Union[PriceQuote, PricingBlocked]


class PricingEngine:
    """Deterministic model -> square footage -> cost lookup."""

    def __init__(self, table: PricingTable) -> None:
        self._table = table

    @property
    def unit_rate(self) -> float:
        return self._table.unit_rate

    @property
    def high_value_threshold(self) -> int:
        return self._table.high_value_threshold

    def price_model(self, model: Optional[str]) -> PricingResult:
        """Purpose: Price a vehicle model or refuse explicitly.
        Inputs/Outputs: Input is a raw or normalized model string; output is PriceQuote
            or PricingBlocked.
        Side Effects / State: None; pure lookup against the injected table.
        Dependencies: normalize_model_key, PricingTable.vehicle_sqft.
        Failure Modes: Never raises for unknown models; an absent key is a PricingBlocked
            value. There is no category default or nearest-match fallback.
        If Removed: The concierge has no way to quote and no way to refuse safely.
        Testing Notes: "F-150" at 5.27 -> 1318; any key absent from the table -> blocked.
        """
        # Absent key blocks; no interpolation.
        key = normalize_model_key(model)
        if not key:
            return PricingBlocked(reason=BLOCK_MODEL_MISSING)
        sqft = self._table.vehicle_sqft.get(key)
        if sqft is None:
            return PricingBlocked(reason=BLOCK_UNRECOGNIZED_MODEL, model_key=key)
        return PriceQuote(
            model_key=key,
            sqft=sqft,
            unit_rate=self._table.unit_rate,
            cost=round_half_up(sqft * Decimal(str(self._table.unit_rate))),
        )

    def price_vehicle(self, vehicle: Optional[Vehicle]) -> PricingResult:
        return self.price_model(vehicle.model if vehicle else None)

    def fleet_estimate(self, quote: PriceQuote, vehicle_count: int) -> Optional[FleetEstimate]:
        """Apply the square-footage discount tier for a multi-vehicle order."""
        if vehicle_count < 2:
            return None
        total_sqft = quote.sqft * vehicle_count
        percent = 0
        for tier in self._table.fleet_tiers:
            if total_sqft >= tier.min_sqft:
                percent = tier.percent
        subtotal = round_half_up(total_sqft * Decimal(str(quote.unit_rate)))
        total = round_half_up(Decimal(subtotal) * (100 - percent) / 100)
        return FleetEstimate(
            vehicle_count=vehicle_count,
            total_sqft=total_sqft,
            subtotal=subtotal,
            discount_percent=percent,
            total=total,
        )


def round_half_up(value: Decimal) -> int:
    # Whole dollars, .5 rounds up.
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
