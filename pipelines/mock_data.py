"""Synthetic upstream records for exercising the pipeline without live access.

Every generator is deterministic for a given ``(count, seed, today)`` so that
re-running an ingestion over mock data is idempotent, and each emits records in
exactly the shape the live adapters consume.
"""

from __future__ import annotations

import random
from datetime import date, timedelta
from typing import Any

MOCK_AREAS: tuple[str, ...] = (
    "Dubai Marina",
    "Downtown Dubai",
    "Business Bay",
    "Palm Jumeirah",
    "Jumeirah Village Circle",
    "Dubai Hills Estate",
    "Arabian Ranches",
    "Jumeirah Lakes Towers",
    "DIFC",
    "City Walk",
)

_DLD_ROOMS = ("Studio", "1 B/R", "2 B/R", "3 B/R", "4 B/R", "5 B/R")
_EJARI_ROOMS = ("Studio", "1 B/R", "2 B/R", "3 B/R", "4 B/R")

# Mock listings go live within the half year after this date.
MOCK_LISTING_EPOCH = date(2024, 7, 1)


def _area_multiplier(area: str, *, palm: float, downtown: float, marina: float = 1.0) -> float:
    if area == "Palm Jumeirah":
        return palm
    if area == "Downtown Dubai":
        return downtown
    if area == "Dubai Marina":
        return marina
    return 1.0


def generate_mock_dld_transactions(
    count: int = 100, *, seed: int = 7, today: date | None = None
) -> list[dict[str, Any]]:
    rng = random.Random(seed)
    today = today or date.today()
    transactions: list[dict[str, Any]] = []

    for i in range(count):
        day = today - timedelta(days=rng.randrange(365))
        area = rng.choice(MOCK_AREAS)
        prop_type = rng.choice(("Unit", "Villa", "Townhouse"))
        rooms = rng.choice(_DLD_ROOMS) if prop_type == "Unit" else None

        base = {"Villa": 5_000_000, "Townhouse": 2_500_000}.get(prop_type, 1_500_000)
        price = round(base * _area_multiplier(area, palm=2.0, downtown=1.8) * (0.7 + rng.random() * 0.6))
        if prop_type == "Villa":
            area_sqm = 300 + rng.random() * 400
        elif prop_type == "Townhouse":
            area_sqm = 150 + rng.random() * 150
        else:
            area_sqm = 50 + rng.random() * 150

        transactions.append(
            {
                "transaction_id": f"MOCK-{i + 1}",
                "transaction_date": day.isoformat(),
                "area_name": area,
                "area_name_en": area,
                "property_type": prop_type,
                "rooms": rooms,
                "procedure_area": round(area_sqm),
                "transaction_value": price,
                "transaction_type": "Sales",
                "is_freehold": True,
                "is_offplan": rng.random() > 0.7,
            }
        )
    return transactions


def generate_mock_ejari_contracts(
    count: int = 100, *, seed: int = 11, today: date | None = None
) -> list[dict[str, Any]]:
    rng = random.Random(seed)
    today = today or date.today()
    contracts: list[dict[str, Any]] = []

    for i in range(count):
        start = today - timedelta(days=rng.randrange(365))
        end = start + timedelta(days=365)
        area = rng.choice(MOCK_AREAS)
        prop_type = rng.choice(("Apartment", "Villa", "Townhouse", "Office"))
        rooms = rng.choice(_EJARI_ROOMS) if prop_type == "Apartment" else None
        is_commercial = prop_type == "Office"

        base = {"Villa": 200_000, "Office": 150_000, "Townhouse": 120_000}.get(prop_type, 80_000)
        multiplier = _area_multiplier(area, palm=1.8, downtown=1.5, marina=1.3)
        annual_rent = round(base * multiplier * (0.8 + rng.random() * 0.4))

        contracts.append(
            {
                "contract_id": f"MOCK-EJARI-{i + 1}",
                "contract_start": start.isoformat(),
                "contract_end": end.isoformat(),
                "area_name": area,
                "area_name_en": area,
                "property_type": prop_type,
                "property_usage": "Commercial" if is_commercial else "Residential",
                "rooms": rooms,
                "annual_rent": annual_rent,
                "contract_duration_months": 12,
                "is_renewal": rng.random() > 0.6,
            }
        )
    return contracts


def generate_mock_portal_listings(
    portal: str,
    count: int = 100,
    *,
    seed: int = 23,
    today: date | None = None,
) -> list[dict[str, Any]]:
    # Listing ids and listed dates do not depend on ``today`` so consecutive
    # daily snapshots track the same listings and days on market grows.
    rng = random.Random(f"{portal}:{seed}")
    today = today or date.today()
    prefix = portal.upper()
    listings: list[dict[str, Any]] = []

    for i in range(count):
        area = rng.choice(MOCK_AREAS)
        prop_type = rng.choice(("Apartment", "Villa", "Townhouse", "Penthouse"))
        bedrooms = rng.randrange(4) if prop_type == "Apartment" else 3 + rng.randrange(3)
        is_villa = prop_type in ("Villa", "Townhouse")

        base = 3_000_000 if is_villa else 1_000_000 + bedrooms * 500_000
        price = round(base * _area_multiplier(area, palm=2.0, downtown=1.7) * (0.8 + rng.random() * 0.4))
        base_sqft = 2_500 if is_villa else 500 + bedrooms * 400
        size_sqft = round(base_sqft * (0.9 + rng.random() * 0.2))

        listed = min(MOCK_LISTING_EPOCH + timedelta(days=rng.randrange(180)), today)
        has_cut = rng.random() > 0.75
        original_price = round(price * (1.05 + rng.random() * 0.15)) if has_cut else None

        listings.append(
            {
                "listing_id": f"{prefix}-MOCK-{i + 1}",
                "portal": portal,
                "title": f"{bedrooms} BR {prop_type} in {area}",
                "location": {"area": area, "community": area, "city": "Dubai"},
                "property_type": prop_type,
                "bedrooms": bedrooms,
                "bathrooms": -(-bedrooms * 6 // 5),
                "size_sqft": size_sqft,
                "price": price,
                "price_currency": "AED",
                "listing_type": "sale",
                "price_per_sqft": round(price / size_sqft),
                "original_price": original_price,
                "listed_date": listed.isoformat(),
                "days_on_market": (today - listed).days,
                "is_active": True,
                "is_verified": rng.random() > 0.5,
                "furnishing": "Unfurnished" if rng.random() > 0.6 else "Furnished",
                "completion_status": "Off-Plan" if rng.random() > 0.8 else "Ready",
            }
        )
    return listings


__all__ = [
    "MOCK_AREAS",
    "MOCK_LISTING_EPOCH",
    "generate_mock_dld_transactions",
    "generate_mock_ejari_contracts",
    "generate_mock_portal_listings",
]
