"""
Application configuration management using Pydantic Settings.
"""
import json
import os
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Type

from pydantic import field_validator
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

CONFIG_FILE_ENV = "XENBACKUP_CONFIG"
DEFAULT_CONFIG_FILE = "config.conf"

# config.conf layout: {"xenserver": {"host", "username", "password"}, "storage": {"dir"}}
_CONFIG_SECTIONS = {
    "xenserver": {
        "host": "XENSERVER_HOST",
        "username": "XENSERVER_USERNAME",
        "password": "XENSERVER_PASSWORD",
    },
    "storage": {
        "dir": "STORAGE_DIR",
    },
}


def flatten_config(data: Dict[str, Any]) -> Dict[str, Any]:
    """Map the sectioned config.conf layout onto flat setting names."""
    flattened: Dict[str, Any] = {}
    for key, value in data.items():
        section = _CONFIG_SECTIONS.get(key.lower())
        if section is not None and isinstance(value, dict):
            for option, field_name in section.items():
                if option in value:
                    flattened[field_name] = value[option]
        else:
            flattened[key.upper()] = value
    return flattened


class JsonConfigFileSource(PydanticBaseSettingsSource):
    """Settings source reading the JSON config file named by XENBACKUP_CONFIG."""

    def get_field_value(self, field: FieldInfo, field_name: str) -> Tuple[Any, str, bool]:
        # Values are produced wholesale by __call__
        return None, field_name, False

    def __call__(self) -> Dict[str, Any]:
        path = Path(os.environ.get(CONFIG_FILE_ENV, DEFAULT_CONFIG_FILE))
        if not path.is_file():
            return {}
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ValueError(f"Invalid JSON in config file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ValueError(f"Config file {path} must contain a JSON object")
        return flatten_config(data)


class Settings(BaseSettings):
    """Main application settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Application
    APP_NAME: str = "xen-backup"
    APP_VERSION: str = "1.0.0"

    # XenServer pool master
    XENSERVER_HOST: str = "https://localhost"
    XENSERVER_USERNAME: str = "root"
    XENSERVER_PASSWORD: Optional[str] = None
    XENSERVER_VERIFY_SSL: bool = False

    # Storage
    STORAGE_DIR: str = "./backups"
    BACKUP_SET_FILE: str = "backup_set.json"
    VM_META_FILE: str = "vm_meta.json"

    # Data-plane transfers
    DATA_PLANE_SCHEME: str = "http"
    TASK_POLL_INTERVAL: float = 5.0
    TASK_PROGRESS_CEILING: float = 0.95
    HTTP_CHUNK_SIZE: int = 1024 * 1024
    HTTP_TIMEOUT: int = 30

    # Restore
    RESTORE_NAME_TEMPLATE: str = "{name_label} (restored {set_id})"
    RESTORE_VIFS: bool = True
    RESTORE_KEEP_MAC: bool = False
    ROLLBACK_ON_FAILURE: bool = False

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "text"  # json or text
    LOG_FILE: Optional[str] = None

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonConfigFileSource(settings_cls),
            file_secret_settings,
        )

    @field_validator("TASK_PROGRESS_CEILING")
    @classmethod
    def check_progress_ceiling(cls, v):
        if not 0.0 < v <= 1.0:
            raise ValueError("TASK_PROGRESS_CEILING must be in (0, 1]")
        return v

    @field_validator("XENSERVER_HOST")
    @classmethod
    def strip_host(cls, v):
        return v.rstrip("/")

    @property
    def storage_path(self) -> Path:
        return Path(self.STORAGE_DIR)

    @property
    def backup_set_path(self) -> Path:
        """Registry document path; relative paths live under the storage root."""
        path = Path(self.BACKUP_SET_FILE)
        if path.is_absolute():
            return path
        return self.storage_path / path


# Global settings instance
settings = Settings()
