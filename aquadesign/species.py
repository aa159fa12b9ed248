"""
Species recommended values.

The species service returns ranges per parameter, e.g.

    {"species_parameters": {"temperature": {"min": 24, "max": 30, "design": 27},
                            "carbon_dioxide": {"max": 15}, ...},
     "removal_rates": {"o2_absorption": {"recommended": 85}, ...}}

`recommended_inputs()` picks one number per `inputs` field from those ranges.
Production fields (tank volume, fish counts, feed) are never pre-filled: they
describe the farm, not the species.
"""

import asyncio
import logging
from typing import Optional
from urllib.parse import quote

from .config import settings
from .errors import RecommendedValuesError
from .transport import HttpError, request_json

logger = logging.getLogger(__name__)

DEFAULT_KEYS = ("design", "recommended", "optimal", "min", "max")

# Fallbacks when the service has nothing to say
DEFAULT_EFFICIENCIES = {
    "o2_absorption": 90,
    "tss_removal": 80,
    "co2_removal": 70,
    "tan_removal": 80,
}
DEFAULT_TARGET_O2_SATURATION = 95
DEFAULT_ALKALINITY = 250

# inputs field -> (species parameter, prefer max, keys tried in order)
WATER_QUALITY_MAP = {
    "temperature": ("temperature", False, ("design", "min", "max")),
    "ph": ("ph", False, ("design",)),
    "salinity": ("salinity", False, ("design",)),
    "min_do": ("dissolved_oxygen", False, ("min", "max")),
    "max_co2": ("carbon_dioxide", True, ("max",)),
    "max_tss": ("total_suspended_solids", True, ("max",)),
    "max_tan": ("total_ammonia_nitrogen", True, ("max",)),
}

# inputs field -> aliases the service has used for the same removal rate
EFFICIENCY_ALIASES = {
    "o2_absorption": ("o2_absorption", "o2Absorption", "oxygen_absorption"),
    "tss_removal": ("tss_removal", "tssRemoval", "solids_removal"),
    "co2_removal": ("co2_removal", "co2Removal", "carbon_dioxide_removal"),
    "tan_removal": ("tan_removal", "tanRemoval", "ammonia_removal"),
}


def _present(value) -> bool:
    return value is not None and value != ""


def best_value(param, prefer_max: bool = False, keys=DEFAULT_KEYS):
    """
    Choose a single value from a parameter range.

    Scalars pass through. Dicts are searched for `keys` in order; failing that a
    min/max pair resolves to the max (prefer_max) or the midpoint, and a lone
    bound is used as-is.
    """
    if param is None or param == "":
        return None
    if not isinstance(param, dict):
        return param

    for key in keys:
        if _present(param.get(key)):
            return param[key]

    low, high = param.get("min"), param.get("max")
    if _present(low) and _present(high):
        if prefer_max:
            return high
        try:
            return (float(low) + float(high)) / 2
        except (TypeError, ValueError):
            return None

    if prefer_max and _present(high):
        return high
    if not prefer_max and _present(low):
        return low
    return None


def recommended_inputs(data: Optional[dict]) -> dict:
    """Map a species service response onto `inputs` form values."""
    data = data or {}
    # Commit responses carry the parameters flat, the species service nests them
    params = data.get("species_parameters") or data.get("parameters") or data
    removal_rates = data.get("removal_rates") or data.get("removalRates") or {}

    values = {}
    for field_name, (param_name, prefer_max, keys) in WATER_QUALITY_MAP.items():
        value = best_value(params.get(param_name), prefer_max, keys)
        if value is not None:
            values[field_name] = value

    for field_name, aliases in EFFICIENCY_ALIASES.items():
        raw = None
        for alias in aliases:
            raw = removal_rates.get(alias) or params.get(alias)
            if raw:
                break
        value = best_value(raw, keys=("recommended", "optimal", "design"))
        values[field_name] = value or DEFAULT_EFFICIENCIES[field_name]

    values["target_min_o2_saturation"] = DEFAULT_TARGET_O2_SATURATION
    values["alkalinity"] = DEFAULT_ALKALINITY
    return values


class SpeciesClient:
    """Looks up recommended values for a species by name."""

    def __init__(self, base_url: Optional[str] = None, token: Optional[str] = None,
                 timeout: Optional[float] = None):
        self.base_url = (base_url or settings.SPECIES_API_URL).rstrip("/")
        self.token = settings.API_TOKEN if token is None else token
        self.timeout = timeout or settings.PREVIEW_TIMEOUT_SECONDS

    def get_recommended_values_sync(self, species: str) -> dict:
        url = f"{self.base_url}/species/{quote(species, safe='')}/recommended-values"
        try:
            data = request_json("GET", url, token=self.token, timeout=self.timeout)
        except HttpError as e:
            if e.status_code == 404:
                raise RecommendedValuesError(f"Species not found: {species}") from e
            raise RecommendedValuesError(e.message) from e

        if not data.get("species_parameters") and not data.get("common_parameters"):
            raise RecommendedValuesError("Invalid response format: missing required parameters")
        return data

    async def get_recommended_values(self, species: str) -> dict:
        return await asyncio.to_thread(self.get_recommended_values_sync, species)
