"""Feature layer builders, one per layer of the wide feature table."""

from .base_builder import LayerBuilder, LayerResult
from .demographics_builder import DemographicsBuilder
from .anthropometry_builder import AnthropometryBuilder
from .vitals_builder import VitalsBuilder
from .labs_builder import LabsBuilder
from .neurological_builder import NeurologicalBuilder
from .medications_builder import MedicationsBuilder
from .comorbidity_builder import ComorbidityBuilder
from .prior_history_builder import PriorHistoryBuilder

# In assembly order
LAYER_BUILDERS = [
    DemographicsBuilder,
    AnthropometryBuilder,
    VitalsBuilder,
    LabsBuilder,
    NeurologicalBuilder,
    MedicationsBuilder,
    ComorbidityBuilder,
    PriorHistoryBuilder,
]

__all__ = [
    'LayerBuilder',
    'LayerResult',
    'DemographicsBuilder',
    'AnthropometryBuilder',
    'VitalsBuilder',
    'LabsBuilder',
    'NeurologicalBuilder',
    'MedicationsBuilder',
    'ComorbidityBuilder',
    'PriorHistoryBuilder',
    'LAYER_BUILDERS',
]
