"""Configuration package for paybridge."""
from .settings import PROVIDER_TAGS, ProviderConfig, Settings, get_settings

__all__ = ["PROVIDER_TAGS", "ProviderConfig", "Settings", "get_settings"]
