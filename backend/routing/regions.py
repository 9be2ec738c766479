"""
US region data for advanced warehouse routing.

Region codes are two-letter US state codes. States are grouped into four
census-style regions; proximity between a state and a warehouse is scored
by region (same region 0, adjacent region 1, anything else 2).
"""

from __future__ import annotations

from routing.models import RegionAssignment, RoutingConfig, Warehouse

US_STATES: dict[str, str] = {
    "AL": "Alabama", "AK": "Alaska", "AZ": "Arizona", "AR": "Arkansas",
    "CA": "California", "CO": "Colorado", "CT": "Connecticut", "DE": "Delaware",
    "FL": "Florida", "GA": "Georgia", "HI": "Hawaii", "ID": "Idaho",
    "IL": "Illinois", "IN": "Indiana", "IA": "Iowa", "KS": "Kansas",
    "KY": "Kentucky", "LA": "Louisiana", "ME": "Maine", "MD": "Maryland",
    "MA": "Massachusetts", "MI": "Michigan", "MN": "Minnesota", "MS": "Mississippi",
    "MO": "Missouri", "MT": "Montana", "NE": "Nebraska", "NV": "Nevada",
    "NH": "New Hampshire", "NJ": "New Jersey", "NM": "New Mexico", "NY": "New York",
    "NC": "North Carolina", "ND": "North Dakota", "OH": "Ohio", "OK": "Oklahoma",
    "OR": "Oregon", "PA": "Pennsylvania", "RI": "Rhode Island", "SC": "South Carolina",
    "SD": "South Dakota", "TN": "Tennessee", "TX": "Texas", "UT": "Utah",
    "VT": "Vermont", "VA": "Virginia", "WA": "Washington", "WV": "West Virginia",
    "WI": "Wisconsin", "WY": "Wyoming",
}  # fmt: skip

_STATE_CODES_BY_NAME = {name.upper(): code for code, name in US_STATES.items()}

US_REGIONS: dict[str, tuple[str, ...]] = {
    "West": ("CA", "OR", "WA", "NV", "AZ", "UT", "ID", "MT", "WY", "CO", "NM", "AK", "HI"),
    "Midwest": ("IL", "IN", "MI", "OH", "WI", "MN", "IA", "MO", "ND", "SD", "NE", "KS"),
    "South": ("TX", "OK", "AR", "LA", "MS", "AL", "TN", "KY", "FL", "GA", "SC", "NC", "VA", "WV"),
    "Northeast": ("NY", "PA", "NJ", "CT", "MA", "RI", "VT", "NH", "ME", "DE", "MD"),
}

# Keyed by the warehouse's region.
REGION_ADJACENCY: dict[str, tuple[str, ...]] = {
    "West": ("Midwest",),
    "Midwest": ("West", "South", "Northeast"),
    "South": ("Midwest", "West"),
    "Northeast": ("Midwest", "South"),
}

_REGION_BY_STATE = {state: region for region, states in US_REGIONS.items() for state in states}

# Warehouses with no usable address state are scored as if they sat here.
DEFAULT_REGION = "West"


def normalize_region_code(value: str | None) -> str:
    """Normalize "ca", " CA ", "California" to "CA". Unknown names are upper-cased."""
    if not value:
        return ""
    cleaned = value.strip().upper()
    if len(cleaned) == 2:
        return cleaned
    return _STATE_CODES_BY_NAME.get(cleaned, cleaned)


def region_of(state_code: str | None) -> str | None:
    return _REGION_BY_STATE.get(normalize_region_code(state_code))


def proximity_score(state_code: str, warehouse: Warehouse) -> int:
    state_region = region_of(state_code) or DEFAULT_REGION
    warehouse_region = region_of(warehouse.region_code) or DEFAULT_REGION
    if state_region == warehouse_region:
        return 0
    if state_region in REGION_ADJACENCY.get(warehouse_region, ()):
        return 1
    return 2


def unassigned_regions(config: RoutingConfig) -> list[str]:
    """US states not claimed by any active assignment, in code order."""
    claimed = {region for a in config.active_assignments for region in a.regions}
    return sorted(code for code in US_STATES if code not in claimed)


def auto_assign_regions(config: RoutingConfig, warehouses: list[Warehouse]) -> RoutingConfig:
    """
    Assign every US state to exactly one active assignment by proximity.

    Ties go to the assignment listed first. Inactive assignments and
    assignments whose warehouse is not registered keep no regions. The result
    always satisfies region exclusivity.
    """
    by_id = {w.id: w for w in warehouses}
    # index into config.assignments -> warehouse, first active entry per warehouse only
    candidates: dict[int, Warehouse] = {}
    seen: set[str] = set()
    for idx, assignment in enumerate(config.assignments):
        if assignment.is_active and assignment.warehouse_id in by_id and assignment.warehouse_id not in seen:
            candidates[idx] = by_id[assignment.warehouse_id]
            seen.add(assignment.warehouse_id)
    if not candidates:
        return config

    claimed: dict[int, set[str]] = {idx: set() for idx in candidates}
    for state in US_STATES:
        best_idx: int | None = None
        best_score = None
        for idx, warehouse in candidates.items():
            score = proximity_score(state, warehouse)
            if best_score is None or score < best_score:
                best_score = score
                best_idx = idx
        if best_idx is not None:
            claimed[best_idx].add(state)

    assignments = [
        RegionAssignment(
            warehouse_id=a.warehouse_id,
            regions=frozenset(claimed.get(idx, set())),
            is_active=a.is_active,
        )
        for idx, a in enumerate(config.assignments)
    ]
    return RoutingConfig(
        mode=config.mode,
        primary_warehouse_id=config.primary_warehouse_id,
        fallback_warehouse_id=config.fallback_warehouse_id,
        assignments=assignments,
    )
