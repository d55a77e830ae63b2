"""
設定 - YAML設定と秘密情報
"""

from .settings import (
    AppConfig, ConfigManager, SecurityManager,
    SyncConfig, StorageConfig, SharingConfig, MessagingConfig, LoggingConfig
)

__all__ = [
    'AppConfig', 'ConfigManager', 'SecurityManager',
    'SyncConfig', 'StorageConfig', 'SharingConfig', 'MessagingConfig', 'LoggingConfig'
]
