"""
Core module for engine configuration and psychometric computations.

Computation subpackages (irt, reliability) are not imported at package level
to avoid circular imports with psychometrics.models. Import them directly:
from psychometrics.core.irt import ... or from psychometrics.core.reliability import ...
"""
from .config import settings

__all__ = ["settings"]
