"""Unit conversion utilities for body measurements and temperature."""

LBS_TO_KG = 0.45359237
INCHES_TO_CM = 2.54


def fahrenheit_to_celsius(fahrenheit: float) -> float:
    """Convert °F to °C."""
    return (fahrenheit - 32) * 5 / 9


def calculate_bmi(weight_kg, height_cm):
    """Calculate BMI from weight (kg) and height (cm).

    Works on scalars and pandas Series alike; heights are expected to have
    passed the plausibility filter already (non-zero).
    """
    height_m = height_cm / 100
    return weight_kg / (height_m ** 2)
