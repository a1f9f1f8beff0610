"""
Core business logic package for FocusFlow.

Contains the FocusEngine orchestration layer, the error taxonomy, the
tagged data records and caller identity resolution. Zero transport
dependencies.
"""

from core.engine import FocusEngine, create_engine

__all__ = ["FocusEngine", "create_engine"]
