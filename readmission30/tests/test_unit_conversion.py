# tests/test_unit_conversion.py
import pytest
import pandas as pd


class TestConversionFactors:
    def test_lbs_factor_is_exact(self):
        from readmission30.utils.unit_conversion import LBS_TO_KG
        assert LBS_TO_KG == 0.45359237

    def test_inches_factor(self):
        from readmission30.utils.unit_conversion import INCHES_TO_CM
        assert 70 * INCHES_TO_CM == pytest.approx(177.8)


class TestTemperatureConversion:
    def test_body_temperature(self):
        from readmission30.utils.unit_conversion import fahrenheit_to_celsius
        assert fahrenheit_to_celsius(98.6) == pytest.approx(37.0, abs=0.01)

    def test_freezing_point(self):
        from readmission30.utils.unit_conversion import fahrenheit_to_celsius
        assert fahrenheit_to_celsius(32) == 0


class TestBMICalculation:
    def test_calculate_bmi(self):
        from readmission30.utils.unit_conversion import calculate_bmi
        # 80kg, 175cm -> BMI = 80 / 1.75^2 = 26.12
        assert calculate_bmi(80, 175) == pytest.approx(26.12, rel=0.01)

    def test_calculate_bmi_series(self):
        from readmission30.utils.unit_conversion import calculate_bmi
        weight = pd.Series([80.0, None])
        height = pd.Series([175.0, 160.0])
        bmi = calculate_bmi(weight, height)
        assert bmi.iloc[0] == pytest.approx(26.12, rel=0.01)
        assert pd.isna(bmi.iloc[1])
