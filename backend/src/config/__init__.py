"""
Configuration module for the lifecycle engine.

Provides centralized configuration for:
- Database connection
- Sweep, reconciliation and escrow settlement cadences
- Grace windows and retry policy
- Escrow service endpoint
"""

from backend.src.config.settings import LifecycleSettings, get_settings

__all__ = [
    "LifecycleSettings",
    "get_settings",
]
