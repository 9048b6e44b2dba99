"""Engine settings."""

from .models import EngineSettings, RetrySettings
from .loader import load_settings, DEFAULT_CONFIG_FILE

__all__ = [
    "EngineSettings",
    "RetrySettings",
    "load_settings",
    "DEFAULT_CONFIG_FILE",
]
