"""
simstudy - Simulation studies for differential-equation models.

Run one model across parameter and structure variants, reuse what is
already computed, and recover cleanly when a variant fails.
"""

from simstudy.simulate import StudyOrchestrator, simulate_model

__version__ = "0.1.0"
__all__ = ["simulate_model", "StudyOrchestrator", "__version__"]
