"""Resource loader for the concierge's static reference tables.

Extraction keywords, the vehicle square-footage table, and the brand profile are
read once at startup into frozen dataclasses and injected into the components
that need them.
"""

from __future__ import annotations

import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .utils import normalize_model_key

logger = logging.getLogger("concierge.resources")

EXTRACTION_FILE = "extraction.json"
PRICING_FILE = "pricing.json"
BRAND_PROFILE_FILE = "brand_profile.json"


@dataclass(frozen=True)
class ResourceMeta:
    """Metadata describing a resource file version for logging."""
    file_name: str
    updated_at: str
    sha256: str


@dataclass(frozen=True)
class ExtractionConfig:
    """Make/model regex fragments and intent keyword lists."""
    makes: Tuple[str, ...]
    models: Tuple[str, ...]
    intents: Dict[str, Tuple[str, ...]]


@dataclass(frozen=True)
class FleetTier:
    min_sqft: int
    percent: int


@dataclass(frozen=True)
class PricingTable:
    """Unit rate plus normalized model key -> square footage."""
    unit_rate: float
    vehicle_sqft: Dict[str, int]
    fleet_tiers: Tuple[FleetTier, ...] = ()
    high_value_threshold: int = 1500
    currency: str = "USD"


@dataclass(frozen=True)
class TeamRoute:
    name: str
    email: str
    role: str


@dataclass(frozen=True)
class BrandProfile:
    """Customer-facing identity, routing table, and product guidance snippets."""
    brand_name: str
    agent_name: str
    support_email: str
    estimator_url: str
    upload_url: str
    quote_prefix: str
    quote_assignee: str
    silent_cc: Optional[str]
    escalation_routes: Dict[str, TeamRoute]
    product_guidance: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ResourceBundle:
    extraction: ExtractionConfig
    pricing: PricingTable
    brand: BrandProfile
    meta: Tuple[ResourceMeta, ...]


class ResourceLoader:
    def __init__(self, resources_dir: Path) -> None:
        """Purpose: Configure the loader with the directory holding the JSON tables.
        Inputs/Outputs: Input is a directory Path; no return value.
        Side Effects / State: Stores the path for later load calls.
        Dependencies: None beyond Path usage.
        Failure Modes: None at init; load() handles read/parse errors.
        If Removed: Extractor, pricing, and routing tables cannot be configured.
        Testing Notes: Point at a temp directory with fixture JSON and call load().
        """
        # Store the resource directory for subsequent loads.
        self._dir = resources_dir

    def load(self) -> ResourceBundle:
        """Purpose: Load and normalize every reference table.
        Inputs/Outputs: No inputs; returns a ResourceBundle.
        Side Effects / State: Reads files and logs their hash/mtime.
        Dependencies: Uses json, hashlib, and the parse_* helpers.
        Failure Modes: Missing files, JSON errors, or missing keys raise to the caller,
            so a broken deployment fails at startup rather than mid-conversation.
        If Removed: The app has no pricing table and cannot price anything.
        Testing Notes: Load the packaged resources and assert the F-150 entry is 250.
        """
        # Parse each file, then log versions once.
        extraction_data, extraction_meta = self._read(EXTRACTION_FILE)
        pricing_data, pricing_meta = self._read(PRICING_FILE)
        brand_data, brand_meta = self._read(BRAND_PROFILE_FILE)
        bundle = ResourceBundle(
            extraction=parse_extraction(extraction_data),
            pricing=parse_pricing(pricing_data),
            brand=parse_brand_profile(brand_data),
            meta=(extraction_meta, pricing_meta, brand_meta),
        )
        for meta in bundle.meta:
            logger.info(
                "resource=%s updated_at=%s sha256=%s",
                meta.file_name,
                meta.updated_at,
                meta.sha256[:12],
            )
        return bundle

    def _read(self, file_name: str) -> Tuple[Dict[str, Any], ResourceMeta]:
        path = self._dir / file_name
        raw_bytes = path.read_bytes()
        meta = ResourceMeta(
            file_name=file_name,
            updated_at=datetime.fromtimestamp(path.stat().st_mtime).isoformat(),
            sha256=hashlib.sha256(raw_bytes).hexdigest(),
        )
        data = json.loads(raw_bytes.decode("utf-8-sig"))
        if not isinstance(data, dict):
            raise ValueError(f"{file_name} must contain a JSON object")
        return data, meta


def parse_extraction(data: Dict[str, Any]) -> ExtractionConfig:
    intents = {
        str(name): tuple(str(keyword).lower() for keyword in keywords)
        for name, keywords in (data.get("intents") or {}).items()
    }
    return ExtractionConfig(
        makes=tuple(data["makes"]),
        models=tuple(data["models"]),
        intents=intents,
    )


def parse_pricing(data: Dict[str, Any]) -> PricingTable:
    """Purpose: Build a PricingTable with normalized lookup keys.
    Inputs/Outputs: Input is the decoded pricing.json dict; output is a PricingTable.
    Side Effects / State: None.
    Dependencies: normalize_model_key, so "F-150" and "f150" share one entry.
    Failure Modes: Raises ValueError on a non-positive rate or square footage; KeyError
        when unit_rate/vehicle_sqft are missing.
    If Removed: Table keys would not match extracted models.
    Testing Notes: Keys like "ram 1500" should load as "ram1500".
    """
    # Normalize keys once so lookups never depend on table spelling.
    unit_rate = float(data["unit_rate"])
    if unit_rate <= 0:
        raise ValueError("unit_rate must be positive")
    table: Dict[str, int] = {}
    for model, sqft in data["vehicle_sqft"].items():
        key = normalize_model_key(model)
        if not key:
            continue
        value = int(sqft)
        if value <= 0:
            raise ValueError(f"square footage for {model!r} must be positive")
        table[key] = value
    tiers: List[FleetTier] = [
        FleetTier(min_sqft=int(tier["min_sqft"]), percent=int(tier["percent"]))
        for tier in data.get("fleet_discount_tiers", [])
    ]
    tiers.sort(key=lambda tier: tier.min_sqft)
    return PricingTable(
        unit_rate=unit_rate,
        vehicle_sqft=table,
        fleet_tiers=tuple(tiers),
        high_value_threshold=int(data.get("high_value_threshold", 1500)),
        currency=str(data.get("currency", "USD")),
    )


def parse_brand_profile(data: Dict[str, Any]) -> BrandProfile:
    routes = {
        str(situation): TeamRoute(
            name=str(route["name"]),
            email=str(route["email"]),
            role=str(route.get("role", "")),
        )
        for situation, route in (data.get("escalation_routes") or {}).items()
    }
    return BrandProfile(
        brand_name=str(data["brand_name"]),
        agent_name=str(data["agent_name"]),
        support_email=str(data["support_email"]),
        estimator_url=str(data.get("estimator_url", "")),
        upload_url=str(data.get("upload_url", "")),
        quote_prefix=str(data.get("quote_prefix", "Q")),
        quote_assignee=str(data.get("quote_assignee", "")),
        silent_cc=data.get("silent_cc") or None,
        escalation_routes=routes,
        product_guidance={str(k): str(v) for k, v in (data.get("product_guidance") or {}).items()},
    )
