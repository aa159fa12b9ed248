"""
Stage catalogue: static descriptors for every step of the design wizard.

initial → inputs → biofilter (optional) → pumps (optional) → report

Each descriptor owns a typed field group, the subset of those fields that must be
filled before the stage can be left, the upstream stages whose snapshots feed its
preview payloads, and the readiness sections its preview results populate.

Payload precedence: sources are merged in `depends_on` order and the stage's own
fields are merged last, so a later (more specific) stage always wins a name
collision. `biofilter.feed_conversion_ratio` overrides `inputs.feed_conversion_ratio`
this way.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Optional

INITIAL = "initial"
INPUTS = "inputs"
BIOFILTER = "biofilter"
PUMPS = "pumps"
REPORT = "report"

STAGE_ORDER = [INITIAL, INPUTS, BIOFILTER, PUMPS, REPORT]

FIELD_KINDS = ("number", "integer", "text", "bool")


@dataclass(frozen=True)
class FieldSpec:
    name: str
    kind: str = "number"
    default: Any = ""
    options: tuple = ()

    def __post_init__(self):
        if self.kind not in FIELD_KINDS:
            raise ValueError(f"Unknown field kind '{self.kind}' for {self.name}")

    @property
    def is_bool(self) -> bool:
        return self.kind == "bool"

    @property
    def is_numeric(self) -> bool:
        return self.kind in ("number", "integer")

    def accepts(self, value) -> bool:
        """Blank always passes; fields with options only take one of them."""
        return not self.options or is_blank(value) or value in self.options


@dataclass(frozen=True)
class StageDescriptor:
    stage_id: str
    ordinal: int
    title: str
    optional: bool = False
    fields: tuple = ()
    required_fields: tuple = ()
    depends_on: tuple = ()
    sections: dict = field(default_factory=dict)  # {section: (output field, ...)}
    previewable: bool = False
    preview_requires: tuple = ()  # categorical fields that must be non-empty to preview
    requires_selected: Optional[str] = None  # optional stage that must be selected first
    terminal: bool = False

    def get_field(self, name: str) -> Optional[FieldSpec]:
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def initial_form(self) -> dict:
        """Fresh FormState for this stage, pre-filled with field defaults."""
        return {f.name: f.default for f in self.fields}


def is_blank(value) -> bool:
    """True for None, empty/whitespace strings and NaN."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, float) and math.isnan(value):
        return True
    return False


# --- Field groups ---

_INITIAL_FIELDS = (
    FieldSpec("design_name", "text"),
    FieldSpec("project_name", "text"),
    FieldSpec("system_purpose", "text", "Commercial aquaculture production (monoculture)"),
    FieldSpec("system_type", "text", "RAS"),
    FieldSpec("species", "text"),
    FieldSpec("use_recommended_values", "bool", False),
    FieldSpec("calculation_type", "text", "advanced", options=("basic", "advanced")),
)

_WATER_QUALITY_FIELDS = (
    FieldSpec("temperature"),
    FieldSpec("salinity"),
    FieldSpec("site_elevation"),
    FieldSpec("min_do"),
    FieldSpec("target_min_o2_saturation"),
    FieldSpec("ph"),
    FieldSpec("alkalinity"),
    FieldSpec("max_tss"),
    FieldSpec("max_co2"),
    FieldSpec("max_tan"),
    FieldSpec("supplement_pure_o2", "bool", False),
)

_PRODUCTION_FIELDS = (
    FieldSpec("tank_volume"),
    FieldSpec("num_tanks", "integer"),
    FieldSpec("production_target_t"),
    FieldSpec("target_fish_weight"),
    FieldSpec("feed_rate"),
    FieldSpec("feed_conversion_ratio"),
    FieldSpec("target_num_fish", "integer"),
    FieldSpec("feed_protein"),
    FieldSpec("harvest_frequency", "text", "Fortnightly", options=("Monthly", "Fortnightly", "Weekly")),
    FieldSpec("initial_weight"),
    FieldSpec("juvenile_size"),
    FieldSpec("fcr_stage1"),
    FieldSpec("feed_protein_stage1"),
    FieldSpec("fcr_stage2"),
    FieldSpec("feed_protein_stage2"),
    FieldSpec("fcr_stage3"),
    FieldSpec("feed_protein_stage3"),
    FieldSpec("estimated_mortality_stage1"),
    FieldSpec("estimated_mortality_stage2"),
    FieldSpec("estimated_mortality_stage3"),
)

_EFFICIENCY_FIELDS = (
    FieldSpec("o2_absorption"),
    FieldSpec("co2_removal"),
    FieldSpec("tss_removal"),
    FieldSpec("tan_removal"),
)

_BIOFILTER_FIELDS = (
    FieldSpec("mbbr_location", "text", "Integrated", options=("Integrated", "Standalone")),
    FieldSpec("media_to_water_volume_ratio"),
    FieldSpec("passive_nitrification_rate_stage1_percent"),
    FieldSpec("passive_nitrification_rate_stage2_percent"),
    FieldSpec("passive_nitrification_rate_stage3_percent"),
    FieldSpec("pump_stop_overflow_volume"),
    FieldSpec("standalone_height_diameter_ratio"),
    FieldSpec("volumetric_nitrification_rate_vtr"),
    FieldSpec("num_tanks_stage1", "integer"),
    FieldSpec("num_tanks_stage2", "integer"),
    FieldSpec("num_tanks_stage3", "integer"),
    FieldSpec("tank_dd_ratio_stage1"),
    FieldSpec("tank_dd_ratio_stage2"),
    FieldSpec("tank_dd_ratio_stage3"),
    FieldSpec("tank_freeboard_stage1"),
    FieldSpec("tank_freeboard_stage2"),
    FieldSpec("tank_freeboard_stage3"),
    FieldSpec("feed_conversion_ratio"),
)

_PUMP_FIELDS = (
    FieldSpec("pump_head_m"),
    FieldSpec("pump_efficiency"),
    FieldSpec("motor_efficiency"),
    FieldSpec("pipe_length_m"),
    FieldSpec("flow_safety_factor"),
)

# --- Output sections (what the engine fills in) ---

_MASS_BALANCE_SECTIONS = {
    "oxygen": ("saturationAdjustedMgL", "MINDO_use", "effluentMgL", "consMgPerDay", "consKgPerDay"),
    "tss": ("MAXTSS_use", "effluentMgL", "prodMgPerDay", "prodKgPerDay"),
    "co2": ("MAXCO2_use", "effluentMgL", "prodMgPerDay", "prodKgPerDay"),
    "tan": ("MAXTAN_use", "effluentMgL", "prodMgPerDay", "prodKgPerDay"),
    "limiting_factor": ("factor", "flow_l_per_min", "flow_m3_per_hr"),
}

_BIOFILTER_STAGE_FIELDS = ("DailyTAN_gday", "DailyTANpassive_gday", "design_VTR",
                           "biomedia_required_m3", "mbbr_volume_m3")

_BIOFILTER_SECTIONS = {
    "biofilter": ("bioVTR_use", "temperature_used", "temp_compensation_factor"),
    "stage1-flow": _BIOFILTER_STAGE_FIELDS,
    "stage2-flow": _BIOFILTER_STAGE_FIELDS,
    "stage3-flow": _BIOFILTER_STAGE_FIELDS,
    "sump": ("size_3min_m3", "size_5min_m3", "total_volume_m3"),
}

_PUMP_STAGE_FIELDS = ("limiting_flow_rate", "q_l_s", "pump_head", "n_pump", "n_motor",
                      "hydraulic_power_kw", "shaft_power_kw")

_PUMP_SECTIONS = {
    "pump-stage1": _PUMP_STAGE_FIELDS,
    "pump-stage2": _PUMP_STAGE_FIELDS,
    "pump-stage3": _PUMP_STAGE_FIELDS,
}


STAGE_REGISTRY: dict[str, StageDescriptor] = {
    INITIAL: StageDescriptor(
        stage_id=INITIAL,
        ordinal=0,
        title="Initial setup",
        fields=_INITIAL_FIELDS,
        required_fields=("design_name", "project_name", "species"),
    ),
    INPUTS: StageDescriptor(
        stage_id=INPUTS,
        ordinal=1,
        title="Water quality and production inputs",
        fields=_WATER_QUALITY_FIELDS + _PRODUCTION_FIELDS + _EFFICIENCY_FIELDS,
        required_fields=("temperature", "salinity"),
        depends_on=(INITIAL,),
        sections=_MASS_BALANCE_SECTIONS,
        previewable=True,
        preview_requires=("species",),
    ),
    BIOFILTER: StageDescriptor(
        stage_id=BIOFILTER,
        ordinal=2,
        title="Biofilter and tank sizing",
        optional=True,
        fields=_BIOFILTER_FIELDS,
        required_fields=("mbbr_location", "volumetric_nitrification_rate_vtr"),
        depends_on=(INITIAL, INPUTS),
        sections=_BIOFILTER_SECTIONS,
        previewable=True,
        preview_requires=("species",),
    ),
    PUMPS: StageDescriptor(
        stage_id=PUMPS,
        ordinal=3,
        title="Pump sizing",
        optional=True,
        fields=_PUMP_FIELDS,
        required_fields=("pump_head_m",),
        depends_on=(INITIAL, INPUTS, BIOFILTER),
        sections=_PUMP_SECTIONS,
        previewable=True,
        preview_requires=("species",),
        requires_selected=BIOFILTER,
    ),
    REPORT: StageDescriptor(
        stage_id=REPORT,
        ordinal=4,
        title="Report",
        terminal=True,
    ),
}


def get_stage(stage_id: str) -> StageDescriptor:
    """Returns the descriptor for a stage, or raises ValueError."""
    if stage_id not in STAGE_REGISTRY:
        raise ValueError(
            f"Unknown stage: {stage_id}. "
            f"Available: {list(STAGE_REGISTRY.keys())}"
        )
    return STAGE_REGISTRY[stage_id]


def has_stage(stage_id: str) -> bool:
    return stage_id in STAGE_REGISTRY


def get_completion_status(stage_id: str, form: dict) -> dict:
    """Required-field completion for one stage's FormState."""
    required = list(get_stage(stage_id).required_fields)
    answered_required = [f for f in required if not is_blank(form.get(f))]
    missing_required = [f for f in required if is_blank(form.get(f))]
    total_answered = sum(1 for v in form.values() if not is_blank(v))

    return {
        "is_complete": len(missing_required) == 0,
        "required_total": len(required),
        "required_answered": len(answered_required),
        "required_missing": missing_required,
        "total_answered": total_answered,
        "completion_pct": round(
            len(answered_required) / max(len(required), 1) * 100, 1
        ),
    }
