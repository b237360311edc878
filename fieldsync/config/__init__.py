"""Configuration package for the field sync client."""

from .app_config import ApiConfig, AppConfig, StorageConfig, SyncConfig

__all__ = ['ApiConfig', 'AppConfig', 'StorageConfig', 'SyncConfig']
