"""
Item Response Theory (2PL) estimation and calibration.
"""
from .calibration import (
    CalibrationResult,
    ItemCalibration,
    ValidationReport,
    calibrate_competency,
    estimate_ability,
    is_calibration_due,
    run_em_calibration,
    validate_calibration,
)
from .estimation import estimate_a, estimate_b, estimate_theta, standard_errors
from .model import dichotomize, item_information, probability
from .response_matrix import ResponseMatrix, build_response_matrix

__all__ = [
    "CalibrationResult",
    "ItemCalibration",
    "ResponseMatrix",
    "ValidationReport",
    "build_response_matrix",
    "calibrate_competency",
    "dichotomize",
    "estimate_a",
    "estimate_ability",
    "estimate_b",
    "estimate_theta",
    "is_calibration_due",
    "item_information",
    "probability",
    "run_em_calibration",
    "standard_errors",
    "validate_calibration",
]
