"""Configuration package for workshop enrollment."""
from .settings import AdmissionPolicy, Settings, get_settings

__all__ = ["AdmissionPolicy", "Settings", "get_settings"]
