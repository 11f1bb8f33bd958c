# tests/test_config.py
import pytest


class TestWindowConfig:
    """Test default time windows."""

    def test_first_day_hours(self):
        from readmission30.config.pipeline_config import WINDOW_CONFIG
        assert WINDOW_CONFIG.first_day_hours == 24

    def test_readmission_window(self):
        from readmission30.config.pipeline_config import WINDOW_CONFIG
        assert (WINDOW_CONFIG.readmission_min_days, WINDOW_CONFIG.readmission_max_days) == (1, 30)

    def test_lookbacks(self):
        from readmission30.config.pipeline_config import WINDOW_CONFIG
        assert WINDOW_CONFIG.lookback_days == {'recent_7d': 7, 'recent_30d': 30, 'prior_12m': 365}


class TestCohortConfig:
    def test_inclusion_thresholds(self):
        from readmission30.config.pipeline_config import COHORT_CONFIG
        assert COHORT_CONFIG.min_age == 18
        assert COHORT_CONFIG.min_icu_los_minutes == 1440


class TestQCConfig:
    def test_coverage_override(self):
        from readmission30.config.pipeline_config import QC_CONFIG
        assert QC_CONFIG.min_coverage('height_cm') == 0.85
        assert QC_CONFIG.min_coverage('anything_else') == QC_CONFIG.default_min_coverage


class TestLoadPipelineConfig:
    def test_defaults(self):
        from readmission30.config.pipeline_config import load_pipeline_config
        config = load_pipeline_config()
        assert config.windows.first_day_hours == 24
        assert config.parallel.backend == 'loky'

    def test_copies_do_not_touch_singletons(self):
        from readmission30.config.pipeline_config import WINDOW_CONFIG, load_pipeline_config
        config = load_pipeline_config()
        config.windows.first_day_hours = 48
        assert WINDOW_CONFIG.first_day_hours == 24

    def test_yaml_overrides(self, tmp_path):
        from readmission30.config.pipeline_config import load_pipeline_config
        path = tmp_path / 'overrides.yaml'
        path.write_text(
            "cohort:\n"
            "  min_age: 21\n"
            "windows:\n"
            "  lookback_days:\n"
            "    recent_7d: 14\n"
            "qc:\n"
            "  coverage_overrides:\n"
            "    bmi: 0.7\n"
        )
        config = load_pipeline_config(path)
        assert config.cohort.min_age == 21
        # Dict-valued fields merge key by key
        assert config.windows.lookback_days == {'recent_7d': 14, 'recent_30d': 30, 'prior_12m': 365}
        assert config.qc.min_coverage('bmi') == 0.7
        assert config.qc.min_coverage('height_cm') == 0.85

    def test_unknown_section(self, tmp_path):
        from readmission30.config.pipeline_config import ConfigurationError, load_pipeline_config
        path = tmp_path / 'overrides.yaml'
        path.write_text("plotting:\n  dpi: 300\n")
        with pytest.raises(ConfigurationError):
            load_pipeline_config(path)

    def test_unknown_key(self, tmp_path):
        from readmission30.config.pipeline_config import ConfigurationError, load_pipeline_config
        path = tmp_path / 'overrides.yaml'
        path.write_text("cohort:\n  max_age: 90\n")
        with pytest.raises(ConfigurationError):
            load_pipeline_config(path)

    def test_section_must_be_mapping(self, tmp_path):
        from readmission30.config.pipeline_config import ConfigurationError, load_pipeline_config
        path = tmp_path / 'overrides.yaml'
        path.write_text("cohort: 18\n")
        with pytest.raises(ConfigurationError):
            load_pipeline_config(path)

    def test_snapshot_is_plain(self):
        from readmission30.config.pipeline_config import PipelineConfig
        snapshot = PipelineConfig().snapshot()
        assert set(snapshot) == {'windows', 'cohort', 'qc', 'parallel'}
        assert snapshot['cohort']['min_age'] == 18


class TestConceptRegistry:
    def test_every_provider_has_a_tier(self):
        from readmission30.config.concept_registry import PROVIDER_TIERS, SOURCE_PRECEDENCE
        for entry in SOURCE_PRECEDENCE.values():
            for provider in entry['providers']:
                assert provider in PROVIDER_TIERS

    def test_canonical_owners_are_layers(self):
        from readmission30.config.concept_registry import CANONICAL_OWNERS, LAYER_ORDER
        assert all(owner in LAYER_ORDER for owner, _ in CANONICAL_OWNERS.values())

    def test_icd_map_loads(self):
        from readmission30.config.pipeline_config import load_icd_comorbidity_map
        comorbidities = load_icd_comorbidity_map()['comorbidities']
        assert comorbidities['congestive_heart_failure']['flag'] == 'chf_flag'
        assert comorbidities['congestive_heart_failure']['icd10'] == ['I50']

    def test_icd_map_carries_no_weights(self):
        from readmission30.config.pipeline_config import load_icd_comorbidity_map
        comorbidities = load_icd_comorbidity_map()['comorbidities']
        assert not [key for key, entry in comorbidities.items() if 'weight' in entry]


class TestPackaging:
    def test_design_notes_not_published_as_readme(self):
        from pathlib import Path
        pyproject = Path(__file__).resolve().parents[2] / 'pyproject.toml'
        lines = [line.strip() for line in pyproject.read_text().splitlines()]
        assert not [line for line in lines if line.startswith('readme') and 'DESIGN.md' in line]
