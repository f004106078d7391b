import os
from typing import Optional

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from diskbuffer_core.persistence.disk_segment import TEMP_FILE_PREFIX, TEMP_FILE_SUFFIX

# Used by Buffer.from_bytes() and Buffer.from_str()
DEFAULT_MAX_MEMORY_SIZE = 2 << 20  # 2 MiB
DEFAULT_COPY_CHUNK_SIZE = 512


class Settings(BaseSettings):
    max_in_memory_size: int = Field(default=DEFAULT_MAX_MEMORY_SIZE, ge=0)
    temp_dir: Optional[str] = None
    encrypt: bool = False
    temp_file_prefix: str = TEMP_FILE_PREFIX
    temp_file_suffix: str = TEMP_FILE_SUFFIX
    copy_chunk_size: int = Field(default=DEFAULT_COPY_CHUNK_SIZE, ge=1)

    model_config = SettingsConfigDict(env_prefix="DISKBUFFER_")


def load_settings(config_file: Optional[str] = None) -> Settings:
    """
    Build Settings from the environment, overridden by the `disk_buffer`
    section of a YAML config file when one is given (or named by CONFIG_FILE).
    """
    config_file = config_file or os.getenv("CONFIG_FILE")
    overrides = {}
    if config_file and os.path.exists(config_file):
        with open(config_file) as f:
            config = yaml.safe_load(f) or {}
            overrides = config.get('disk_buffer', {}) or {}
    return Settings(**overrides)


settings = Settings()
