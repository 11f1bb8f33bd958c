"""
Concept Registry
================

Static per-concept tables shared by every component: plausibility ranges,
canonical units and conversion factors, magnitude-based unit inference,
provider precedence, provider tiers, column ownership and source item ids.
"""

from typing import Dict, List, Tuple

from ..utils.unit_conversion import LBS_TO_KG, INCHES_TO_CM, fahrenheit_to_celsius


# =============================================================================
# PROVENANCE TIERS
# =============================================================================

TRUSTED_DERIVED = 'trusted_derived'
LOCALLY_COMPUTED = 'locally_computed'
RAW_FALLBACK = 'raw_fallback'
ABSENT = 'absent'

PROVENANCE_TIERS = [TRUSTED_DERIVED, LOCALLY_COMPUTED, RAW_FALLBACK, ABSENT]


# =============================================================================
# PLAUSIBILITY RANGES
# =============================================================================

# Canonical-unit bounds, inclusive: (min_valid, max_valid)
# Values outside these are discarded, never clamped
PLAUSIBLE_RANGES: Dict[str, Tuple[float, float]] = {
    # Anthropometry
    'height': (120, 220),           # cm
    'weight': (30, 300),            # kg
    'bmi': (12, 60),                # kg/m^2

    # Vital signs
    'heart_rate': (20, 300),        # bpm
    'sbp': (40, 300),               # mmHg
    'dbp': (20, 200),               # mmHg
    'mbp': (30, 200),               # mmHg
    'resp_rate': (4, 60),           # breaths/min
    'temperature': (30, 45),        # °C
    'spo2': (50, 100),              # %
    'fio2': (21, 100),              # %
    'peep': (0, 80),                # cmH2O
    'pip': (0, 80),                 # cmH2O
    'plateau_pressure': (0, 80),    # cmH2O
    'tidal_volume': (20, 5000),     # mL

    # Labs
    'glucose': (10, 2000),          # mg/dL
    'hemoglobin': (1, 25),          # g/dL
    'hematocrit': (5, 75),          # %
    'platelets': (1, 2000),         # K/uL
    'wbc': (0.1, 500),              # K/uL
    'creatinine': (0.1, 20),        # mg/dL
    'bun': (1, 300),                # mg/dL
    'sodium': (90, 200),            # mEq/L
    'potassium': (1, 12),           # mEq/L
    'chloride': (50, 160),          # mEq/L
    'bicarbonate': (2, 60),         # mEq/L
    'calcium': (2, 20),             # mg/dL
    'aniongap': (-10, 60),          # mEq/L
    'albumin': (0.5, 7),            # g/dL
    'bilirubin_total': (0, 80),     # mg/dL
    'bilirubin_direct': (0, 60),    # mg/dL
    'alt': (0, 20000),              # IU/L
    'ast': (0, 30000),              # IU/L
    'inr': (0.5, 20),
    'pt': (5, 200),                 # sec
    'ptt': (10, 250),               # sec
    'd_dimer': (0, 100000),         # ng/mL
    'fibrinogen': (10, 2000),       # mg/dL
    'lactate': (0, 40),             # mmol/L
    'troponin': (0, 1000),          # ng/mL
    'ntprobnp': (0, 100000),        # pg/mL
    'abs_neutrophils': (0, 200),    # K/uL
    'abs_lymphocytes': (0, 200),    # K/uL
    'abs_monocytes': (0, 100),      # K/uL
    'magnesium': (0.3, 10),         # mg/dL
    'phosphate': (0.3, 20),         # mg/dL
    'crp': (0, 600),                # mg/L
    'ph': (6.5, 8.0),
    'pco2': (5, 200),               # mmHg

    # Neurological
    'gcs_total': (3, 15),
    'gcs_eyes': (1, 4),
    'gcs_verbal': (1, 5),
    'gcs_motor': (1, 6),

    # Comorbidity and severity
    'binary_flag': (0, 1),
    'charlson_index': (0, 40),
    'sofa': (0, 24),
    'sofa_component': (0, 4),
    'urine_output': (0, 20000),     # mL / 24h
    'urine_output_rate': (0, 20),   # mL/kg/h
}


# =============================================================================
# UNITS
# =============================================================================

# Format: {concept: {'target': unit, 'factors': {source_unit: factor}}}
# Unit keys are stored in normalized form (see normalizer.normalize_unit).
# 'functions' holds non-linear conversions as source_unit -> callable
UNIT_CONVERSIONS: Dict[str, Dict] = {
    'height': {
        'target': 'cm',
        'factors': {
            'cm': 1.0,
            'm': 100.0,
            'in': INCHES_TO_CM,
            'inch': INCHES_TO_CM,
            'inches': INCHES_TO_CM,
            '"': INCHES_TO_CM,
        },
    },
    'weight': {
        'target': 'kg',
        'factors': {
            'kg': 1.0,
            'lb': LBS_TO_KG,
            'lbs': LBS_TO_KG,
            'pound': LBS_TO_KG,
            'pounds': LBS_TO_KG,
            'g': 0.001,
        },
    },
    'temperature': {
        'target': 'c',
        'factors': {
            'c': 1.0,
        },
        'functions': {
            'f': fahrenheit_to_celsius,
        },
    },
    'glucose': {
        'target': 'mg/dl',
        'factors': {
            'mg/dl': 1.0,
            'mmol/l': 18.016,
        },
    },
    'creatinine': {
        'target': 'mg/dl',
        'factors': {
            'mg/dl': 1.0,
            'umol/l': 1.0 / 88.42,
        },
    },
    'fio2': {
        'target': '%',
        'factors': {
            '%': 1.0,
            'fraction': 100.0,
        },
    },
    'lactate': {
        'target': 'mmol/l',
        'factors': {
            'mmol/l': 1.0,
            'mg/dl': 1.0 / 9.01,
        },
    },
}

# Unit-less values are interpreted by magnitude: (lo, hi, assumed_unit), inclusive.
# A value matching no rule is taken as already canonical.
MAGNITUDE_RULES: Dict[str, List[Tuple[float, float, str]]] = {
    'height': [
        (1.0, 2.5, 'm'),
        (50.0, 84.0, 'in'),
    ],
    'temperature': [
        (50.0, 120.0, 'f'),
    ],
    'fio2': [
        (0.21, 1.0, 'fraction'),
    ],
}


# =============================================================================
# PROVIDERS AND PRECEDENCE
# =============================================================================

PROVIDER_TIERS: Dict[str, str] = {
    # Trusted derived aggregates
    'first_day_height': TRUSTED_DERIVED,
    'first_day_weight': TRUSTED_DERIVED,
    'first_day_vitalsign': TRUSTED_DERIVED,
    'first_day_lab': TRUSTED_DERIVED,
    'first_day_gcs': TRUSTED_DERIVED,
    'first_day_urine_output': TRUSTED_DERIVED,
    'charlson': TRUSTED_DERIVED,

    # Locally computed tables
    'chart_height': LOCALLY_COMPUTED,
    'chart_weight': LOCALLY_COMPUTED,
    'inputevents_weight': LOCALLY_COMPUTED,
    'procedureevents_weight': LOCALLY_COMPUTED,
    'charlson_local': LOCALLY_COMPUTED,

    # Raw-event fallbacks
    'omr_height': RAW_FALLBACK,
    'omr_weight': RAW_FALLBACK,
    'omr_bmi': RAW_FALLBACK,
    'chartevents_window': RAW_FALLBACK,
    'labevents_window': RAW_FALLBACK,
    'icd_mapping': RAW_FALLBACK,

    # Composite terminal providers
    'computed_bmi': RAW_FALLBACK,
    'composite_charlson': RAW_FALLBACK,
}

# Vital aggregates: derived column stem -> output stem
VITAL_STEMS: Dict[str, str] = {
    'heart_rate': 'hr',
    'sbp': 'sbp',
    'dbp': 'dbp',
    'mbp': 'mbp',
    'resp_rate': 'rr',
    'temperature': 'temp_c',
    'spo2': 'spo2',
    'glucose': 'glucose',
}

# Ventilator output stem -> plausibility range key
VENTILATION_STEMS: Dict[str, str] = {
    'fio2': 'fio2',
    'peep': 'peep',
    'pip': 'pip',
    'tv': 'tidal_volume',
    'plateau': 'plateau_pressure',
}

# Lab analytes carried by first_day_lab: analyte -> aggregates
FIRST_DAY_LAB_AGGREGATES: Dict[str, List[str]] = {
    'hemoglobin': ['min', 'max'],
    'hematocrit': ['min', 'max'],
    'platelets': ['min', 'max'],
    'wbc': ['max'],
    'glucose': ['min', 'max'],
    'creatinine': ['max'],
    'bun': ['max'],
    'sodium': ['min', 'max'],
    'potassium': ['min', 'max'],
    'chloride': ['min'],
    'bicarbonate': ['min'],
    'calcium': ['min'],
    'aniongap': ['min'],
    'albumin': ['min'],
    'bilirubin_total': ['max'],
    'bilirubin_direct': ['max'],
    'alt': ['max'],
    'ast': ['max'],
    'inr': ['max'],
    'pt': ['max'],
    'ptt': ['max'],
    'd_dimer': ['max'],
    'fibrinogen': ['max'],
    'lactate': ['max'],
    'troponin': ['max'],
    'ntprobnp': ['max'],
    'abs_neutrophils': ['max'],
    'abs_lymphocytes': ['max'],
    'abs_monocytes': ['max'],
    'magnesium': ['max'],
    'phosphate': ['max'],
}

# Analytes that fall back to labevents when first_day_lab is missing
LAB_FALLBACK_ANALYTES = [
    'glucose', 'creatinine', 'bun', 'lactate', 'troponin', 'magnesium', 'phosphate',
]

CHARLSON_COMPONENTS = [
    'myocardial_infarct',
    'congestive_heart_failure',
    'peripheral_vascular_disease',
    'cerebrovascular_disease',
    'dementia',
    'chronic_pulmonary_disease',
    'rheumatic_disease',
    'peptic_ulcer_disease',
    'mild_liver_disease',
    'diabetes_without_cc',
    'diabetes_with_cc',
    'paraplegia',
    'renal_disease',
    'malignant_cancer',
    'severe_liver_disease',
    'metastatic_solid_tumor',
    'aids',
]

# Classical weights, no hierarchy and no age points
CHARLSON_WEIGHTS: Dict[str, int] = {
    'myocardial_infarct': 1,
    'congestive_heart_failure': 1,
    'peripheral_vascular_disease': 1,
    'cerebrovascular_disease': 1,
    'dementia': 1,
    'chronic_pulmonary_disease': 1,
    'rheumatic_disease': 1,
    'peptic_ulcer_disease': 1,
    'mild_liver_disease': 1,
    'diabetes_without_cc': 1,
    'diabetes_with_cc': 2,
    'paraplegia': 2,
    'renal_disease': 2,
    'malignant_cancer': 2,
    'severe_liver_disease': 3,
    'metastatic_solid_tumor': 6,
    'aids': 6,
}


def vital_concept(out_stem: str, agg: str) -> str:
    """Precedence key for a first-day vital aggregate.

    Vitals glucose is keyed apart from labs glucose, which owns the plain name.
    """
    name = f'{out_stem}_first_24h_{agg}'
    return f'vitals_{name}' if out_stem == 'glucose' else name


def _build_precedence() -> Dict[str, Dict]:
    """Assemble the concept -> {'range', 'providers'} table."""
    precedence: Dict[str, Dict] = {
        'height_cm': {
            'range': 'height',
            'providers': ['first_day_height', 'chart_height', 'omr_height'],
        },
        'weight_kg': {
            'range': 'weight',
            'providers': [
                'first_day_weight', 'chart_weight', 'inputevents_weight',
                'procedureevents_weight', 'omr_weight',
            ],
        },
        'bmi': {
            'range': 'bmi',
            'providers': ['omr_bmi', 'computed_bmi'],
        },
        'urine_output_first_24h_ml': {
            'range': 'urine_output',
            'providers': ['first_day_urine_output'],
        },
        'charlson_index_final': {
            'range': 'charlson_index',
            'providers': ['charlson', 'charlson_local', 'composite_charlson'],
        },
    }

    for derived_stem, out_stem in VITAL_STEMS.items():
        for agg in ('min', 'max', 'mean'):
            precedence[vital_concept(out_stem, agg)] = {
                'range': derived_stem,
                'providers': ['first_day_vitalsign', 'chartevents_window'],
            }

    for analyte, aggs in FIRST_DAY_LAB_AGGREGATES.items():
        providers = ['first_day_lab']
        if analyte in LAB_FALLBACK_ANALYTES:
            providers.append('labevents_window')
        for agg in aggs:
            precedence[f'{analyte}_first_24h_{agg}'] = {
                'range': analyte,
                'providers': providers,
            }

    # Ventilator settings exist only in chartevents
    for out_stem, range_key in VENTILATION_STEMS.items():
        precedence[f'{out_stem}_first_24h_mean'] = {
            'range': range_key,
            'providers': ['chartevents_window'],
        }

    # Analytes first_day_lab does not carry
    precedence['crp_first_24h_max'] = {'range': 'crp', 'providers': ['labevents_window']}
    for analyte in ('ph', 'pco2'):
        for position in ('first', 'last'):
            precedence[f'{analyte}_{position}_24h'] = {
                'range': analyte,
                'providers': ['labevents_window'],
            }

    for component in ('gcs_total', 'gcs_eyes', 'gcs_verbal', 'gcs_motor'):
        precedence[f'{component}_first_24h_min'] = {
            'range': component,
            'providers': ['first_day_gcs', 'chartevents_window'],
        }

    for component in CHARLSON_COMPONENTS:
        precedence[component] = {
            'range': 'binary_flag',
            'providers': ['charlson', 'charlson_local', 'icd_mapping'],
        }

    return precedence


# Concept -> plausibility range key and ordered provider names.
# Static by construction: never derived from the data.
SOURCE_PRECEDENCE: Dict[str, Dict] = _build_precedence()


# =============================================================================
# LAYERS AND COLUMN OWNERSHIP
# =============================================================================

LAYER_ORDER = [
    'demographics',
    'anthropometry',
    'vitals',
    'labs',
    'neurological',
    'medications',
    'comorbidity',
    'prior_history',
]

KEY_COLUMNS = ['subject_id', 'hadm_id', 'index_stay_id']
LABEL_COLUMNS = ['readmit_30d_flag', 'days_to_30d_readmission']
BOOKKEEPING_COLUMNS = ['feature_extraction_timestamp']

# Column claimed by more than one layer -> (owning layer, suffix for the others)
CANONICAL_OWNERS: Dict[str, Tuple[str, str]] = {
    'glucose_first_24h_min': ('labs', '_vitals'),
    'glucose_first_24h_max': ('labs', '_vitals'),
    'glucose_first_24h_mean': ('labs', '_vitals'),
    'hypoglycemia_flag': ('labs', '_vitals'),
    'hyperglycemia_flag': ('labs', '_vitals'),
    'lactate_first_24h_max': ('labs', '_hemo'),
    'elevated_lactate_flag': ('labs', '_hemo'),
    'lactate_available_flag': ('labs', '_hemo'),
    'mbp_first_24h_mean': ('vitals', '_hemo'),
}


# =============================================================================
# SOURCE ITEM IDS
# =============================================================================

# chartevents items for first-day vitals
VITAL_CHART_ITEMS: Dict[str, List[int]] = {
    'heart_rate': [220045],
    'sbp': [220179, 220050],
    'dbp': [220180, 220051],
    'mbp': [220181, 220052],
    'resp_rate': [220210, 224690],
    'temperature': [223761, 223762],
    'spo2': [220277],
    'glucose': [220621, 225664, 226537],
}

VENTILATION_CHART_ITEMS: Dict[str, List[int]] = {
    'fio2': [223835],
    'peep': [224700],
    'pip': [224695],
    'tidal_volume': [224685],
    'plateau_pressure': [224696],
}

MECHVENT_CHART_ITEM = 223849

GCS_CHART_ITEMS: Dict[str, List[int]] = {
    'gcs_eyes': [220739],
    'gcs_verbal': [223900],
    'gcs_motor': [223901],
}

# Chart items whose unit is fixed by the item definition
CHART_ITEM_UNITS: Dict[int, str] = {
    223761: '°F',
    223762: '°C',
    226730: 'cm',
    226512: 'kg',
    226531: 'lb',
    224639: 'kg',
    226846: 'kg',
}

HEIGHT_CHART_ITEMS = [226730, 226707]
WEIGHT_CHART_ITEMS = [226512, 226531, 224639, 226846]

LAB_ITEMS: Dict[str, List[int]] = {
    'glucose': [50931, 50943, 50809],
    'creatinine': [50912],
    'bun': [51006],
    'lactate': [50813],
    'troponin': [51002, 50954, 51003],
    'magnesium': [50960],
    'phosphate': [50970],
    'crp': [50889],
    'ph': [50820],
    'pco2': [50818],
}
