"""
設定管理 - 階層化YAML設定とセキュアな秘密情報管理
"""

import base64
import dataclasses
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from cryptography.fernet import Fernet, InvalidToken

from ..layers.sharing_layer.registry import DEFAULT_INVITE_TEMPLATE
from ..utils.enhanced_logger import get_logger

logger = get_logger()


@dataclass
class SyncConfig:
    """同期層設定"""
    window_past_days: int = 30
    window_future_days: int = 365
    call_timeout_seconds: float = 15.0


@dataclass
class StorageConfig:
    """ストレージ設定"""
    remote_db_path: str = "data/remote.db"
    cache_db_path: str = "data/offline_cache.db"
    local_provider: str = "ics"  # ics, memory
    local_calendar_dir: str = "data/calendars"
    cache_retention_buckets: int = 6


@dataclass
class SharingConfig:
    """共有設定"""
    max_status_attempts: int = 3
    status_retry_delay_seconds: float = 2.0
    invite_template: str = DEFAULT_INVITE_TEMPLATE
    app_link: str = "[App Link]"


@dataclass
class MessagingConfig:
    """SMS送信設定"""
    enabled: bool = False
    webhook_url: Optional[str] = None
    rate_limit_per_minute: int = 30
    timeout_seconds: float = 10.0


@dataclass
class LoggingConfig:
    """ログ設定"""
    level: str = "INFO"
    file_path: Optional[str] = None
    json_output: bool = False
    metrics_enabled: bool = True


@dataclass
class AppConfig:
    """設定メインクラス"""
    sync: SyncConfig = field(default_factory=SyncConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    sharing: SharingConfig = field(default_factory=SharingConfig)
    messaging: MessagingConfig = field(default_factory=MessagingConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    debug: bool = False
    version: str = "1.0.0"
    environment: str = "development"  # development, staging, production


# セクション名 → (ファイル名, データクラス)
SECTION_FILES = {
    'sync': ("sync.yaml", SyncConfig),
    'storage': ("storage.yaml", StorageConfig),
    'sharing': ("sharing.yaml", SharingConfig),
    'messaging': ("messaging.yaml", MessagingConfig),
}


def _as_bool(value: str) -> bool:
    return value.lower() in ['true', '1', 'yes']


class SecurityManager:
    """セキュリティ管理クラス"""

    def __init__(self, encryption_key: Optional[str] = None):
        self.encryption_key = encryption_key or self._get_or_create_key()
        self.cipher = Fernet(self.encryption_key.encode()) if self.encryption_key else None

    def _get_or_create_key(self) -> str:
        """暗号化キーの取得または生成"""
        key = os.getenv('SPACKL_ENCRYPTION_KEY')

        if not key:
            key = Fernet.generate_key().decode()
            logger.warning(
                "New encryption key generated. Store it securely!",
                key_preview=key[:8] + "...",
                operation="key_generation"
            )

        return key

    def encrypt_value(self, value: str) -> str:
        """値の暗号化"""
        encrypted = self.cipher.encrypt(value.encode())
        return base64.urlsafe_b64encode(encrypted).decode()

    def decrypt_value(self, encrypted_value: str) -> str:
        """値の復号化（失敗時は元の値を返す）"""
        try:
            decoded = base64.urlsafe_b64decode(encrypted_value.encode())
            return self.cipher.decrypt(decoded).decode()
        except (InvalidToken, ValueError) as e:
            logger.error("Decryption failed", error=e, operation="secrets_decrypt")
            return encrypted_value


class ConfigManager:
    """設定管理メインクラス"""

    SECRET_KEYS = [
        'SPACKL_SMS_API_TOKEN',
        'SPACKL_SMS_SENDER',
    ]

    ENV_OVERRIDES = {
        'SPACKL_DEBUG': ('debug', _as_bool),
        'SPACKL_ENVIRONMENT': ('environment', str),
        'SPACKL_LOG_LEVEL': ('logging.level', str),
        'SPACKL_LOG_FILE': ('logging.file_path', str),
        'SPACKL_REMOTE_DB': ('storage.remote_db_path', str),
        'SPACKL_CACHE_DB': ('storage.cache_db_path', str),
        'SPACKL_LOCAL_PROVIDER': ('storage.local_provider', str),
        'SPACKL_CALENDAR_DIR': ('storage.local_calendar_dir', str),
        'SPACKL_CALL_TIMEOUT': ('sync.call_timeout_seconds', float),
        'SPACKL_SMS_WEBHOOK_URL': ('messaging.webhook_url', str),
        'SPACKL_SMS_ENABLED': ('messaging.enabled', _as_bool),
    }

    def __init__(self,
                 config_dir: Union[str, Path] = "config",
                 secrets_dir: Union[str, Path, None] = None,
                 security_manager: Optional[SecurityManager] = None):

        self.config_dir = Path(config_dir)
        self.secrets_dir = Path(secrets_dir) if secrets_dir else self.config_dir / "secrets"
        self._security_manager = security_manager

        self._config_cache: Optional[AppConfig] = None
        self._secrets_cache: Dict[str, Any] = {}

    @property
    def security_manager(self) -> SecurityManager:
        # 暗号化された値がある場合のみキーを用意する
        if self._security_manager is None:
            self._security_manager = SecurityManager()
        return self._security_manager

    def load_config(self, reload: bool = False) -> AppConfig:
        """設定の読み込み"""
        if self._config_cache and not reload:
            return self._config_cache

        main_config = self._load_yaml_file(self.config_dir / "main.yaml")

        section_configs = {
            name: self._load_yaml_file(self.config_dir / filename)
            for name, (filename, _) in SECTION_FILES.items()
        }

        merged_config = self._merge_configs(main_config, section_configs)
        merged_config = self._apply_env_overrides(merged_config)

        self._config_cache = self._create_config_object(merged_config)

        logger.info(
            "Configuration loaded successfully",
            config_dir=str(self.config_dir),
            environment=self._config_cache.environment,
            version=self._config_cache.version,
            operation="config_load"
        )

        return self._config_cache

    def load_secrets(self, reload: bool = False) -> Dict[str, Any]:
        """秘密情報の読み込み（優先順位: 環境変数 > .env > JSON）"""
        if self._secrets_cache and not reload:
            return self._secrets_cache

        env_secrets = self._load_env_secrets()
        env_file_secrets = self._load_env_file()
        json_secrets = self._load_json_secrets()

        self._secrets_cache = {
            **json_secrets,
            **env_file_secrets,
            **env_secrets
        }

        self._decrypt_secrets()

        logger.info(
            "Secrets loaded successfully",
            secret_count=len(self._secrets_cache),
            sources=["env", "env_file", "json"],
            operation="secrets_load"
        )

        return self._secrets_cache

    def get_secret(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.load_secrets().get(key, default)

    def _load_yaml_file(self, file_path: Path) -> Dict[str, Any]:
        """YAMLファイルの読み込み"""
        if not file_path.exists():
            logger.debug(f"Config file not found: {file_path}")
            return {}

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            logger.error(f"Failed to load YAML file: {file_path}", error=e, operation="config_load")
            return {}

        if not isinstance(data, dict):
            logger.warning(f"Ignoring non-mapping YAML file: {file_path}", operation="config_load")
            return {}
        return data

    def _load_env_secrets(self) -> Dict[str, str]:
        return {key: os.getenv(key) for key in self.SECRET_KEYS if os.getenv(key)}

    def _load_env_file(self) -> Dict[str, str]:
        """.envファイルからの読み込み"""
        env_file = self.secrets_dir / ".env"
        if not env_file.exists():
            return {}

        secrets = {}
        with open(env_file, 'r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#') and '=' in line:
                    key, value = line.split('=', 1)
                    secrets[key.strip()] = value.strip().strip('"\'')

        return secrets

    def _load_json_secrets(self) -> Dict[str, Any]:
        """JSONファイルからの読み込み"""
        if not self.secrets_dir.exists():
            return {}

        secrets = {}
        for file_path in sorted(self.secrets_dir.glob("*.json")):
            try:
                with open(file_path, 'r', encoding='utf-8') as f:
                    secrets.update(json.load(f))
            except (json.JSONDecodeError, OSError) as e:
                logger.error(f"Failed to load JSON file: {file_path.name}", error=e, operation="secrets_load")

        return secrets

    def _decrypt_secrets(self):
        """暗号化された秘密情報の復号化"""
        encrypted_prefix = "encrypted:"

        for key, value in self._secrets_cache.items():
            if isinstance(value, str) and value.startswith(encrypted_prefix):
                encrypted_value = value[len(encrypted_prefix):]
                self._secrets_cache[key] = self.security_manager.decrypt_value(encrypted_value)

    def _merge_configs(self, main_config: Dict, section_configs: Dict) -> Dict:
        """設定の統合（セクションファイルが main.yaml の同名セクションを上書き）"""
        merged = dict(main_config)

        for section_name, section_config in section_configs.items():
            if section_config:
                base = merged.get(section_name) or {}
                merged[section_name] = {**base, **section_config}

        return merged

    def _apply_env_overrides(self, config: Dict) -> Dict:
        """環境変数によるオーバーライド"""
        for env_key, (config_path, converter) in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_key)
            if env_value:
                try:
                    self._set_nested_value(config, config_path, converter(env_value))
                except ValueError as e:
                    logger.warning(f"Failed to apply env override {env_key}", error_message=str(e))

        return config

    def _set_nested_value(self, config: Dict, path: str, value: Any):
        keys = path.split('.')
        current = config

        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def _create_config_object(self, config_dict: Dict) -> AppConfig:
        """設定辞書から設定オブジェクトを作成（未知のキーは警告して無視）"""
        section_types = {
            'sync': SyncConfig,
            'storage': StorageConfig,
            'sharing': SharingConfig,
            'messaging': MessagingConfig,
            'logging': LoggingConfig,
        }

        kwargs = {}
        top_level_fields = {f.name for f in dataclasses.fields(AppConfig)}

        for key, value in config_dict.items():
            if key not in top_level_fields:
                logger.warning(f"Unknown config key ignored: {key}", operation="config_load")
                continue
            if key in section_types:
                kwargs[key] = self._build_section(key, section_types[key], value or {})
            else:
                kwargs[key] = value

        return AppConfig(**kwargs)

    def _build_section(self, name: str, section_type, values: Dict[str, Any]):
        known = {f.name for f in dataclasses.fields(section_type)}
        unknown = set(values) - known
        for key in sorted(unknown):
            logger.warning(f"Unknown config key ignored: {name}.{key}", operation="config_load")
        return section_type(**{k: v for k, v in values.items() if k in known})

    def save_config_template(self):
        """設定ファイルテンプレートの作成"""
        defaults = AppConfig()
        templates = {
            "main.yaml": {
                "version": defaults.version,
                "environment": defaults.environment,
                "debug": defaults.debug,
                "logging": dataclasses.asdict(defaults.logging),
            },
        }
        for name, (filename, _) in SECTION_FILES.items():
            templates[filename] = dataclasses.asdict(getattr(defaults, name))

        self.config_dir.mkdir(parents=True, exist_ok=True)
        created = []
        for filename, template in templates.items():
            file_path = self.config_dir / filename
            if not file_path.exists():
                with open(file_path, 'w', encoding='utf-8') as f:
                    yaml.dump(template, f, default_flow_style=False, allow_unicode=True)
                logger.info(f"Created config template: {filename}")
                created.append(filename)
        return created
