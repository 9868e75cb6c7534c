"""
Psychometric analysis and item calibration engine.

Computes classical item statistics, Cronbach's alpha reliability and 2PL IRT
parameters from raw assessment responses, and manages each item's validity
status with an append-only audit trail.
"""

__version__ = "0.1.0"
