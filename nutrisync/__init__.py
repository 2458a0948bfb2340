"""NutriSync: offline-first meal capture sync and AI nutrition analysis."""

__version__ = "0.3.0"
