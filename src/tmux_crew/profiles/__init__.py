"""Worker profile models and loader exports."""

from .loader import ProfileLoadError, ProfileLoader, load_profiles
from .models import WorkerProfile

__all__ = ["ProfileLoadError", "ProfileLoader", "WorkerProfile", "load_profiles"]
