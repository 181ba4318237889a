"""
Listener Configuration.

Loads the YAML file describing which ports to listen on and where each
listener writes its capture log. Validation is done by pydantic models.
"""

from enum import Enum
from pathlib import Path
from typing import List, Optional, Union

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

DEFAULT_MAX_LOG_SIZE = 50 * 1024 * 1024  # 50MB
DEFAULT_ROTATION_INTERVAL = 24 * 60 * 60  # seconds


class ConfigError(ValueError):
    pass


class LogLevel(str, Enum):
    DATA = "DATA"  # raw payload bytes only
    DEBUG = "DEBUG"  # one JSON record per payload


class Protocol(str, Enum):
    TCP = "TCP"
    UDP = "UDP"
    TLS = "TLS"


class BinaryEncoding(str, Enum):
    BASE64 = "base64"
    HEX = "hex"


class ListenerConfig(BaseModel):
    port: int = Field(ge=1, le=65535)
    protocol: Protocol
    log_file: str = Field(min_length=1)
    log_level: LogLevel
    binary_encoding: BinaryEncoding = BinaryEncoding.BASE64
    tls_cert_file: Optional[str] = None
    tls_key_file: Optional[str] = None
    name: Optional[str] = None
    max_log_size: int = Field(default=DEFAULT_MAX_LOG_SIZE, gt=0)
    rotation_interval: float = Field(default=DEFAULT_ROTATION_INTERVAL, gt=0)

    @field_validator("binary_encoding", mode="before")
    @classmethod
    def _empty_encoding_is_default(cls, value):
        return value or BinaryEncoding.BASE64

    @model_validator(mode="after")
    def _check_tls_files(self):
        if self.protocol == Protocol.TLS and not (self.tls_cert_file and self.tls_key_file):
            raise ValueError("TLS protocol requires tls_cert_file and tls_key_file")
        if not self.name:
            self.name = f"{self.protocol.value}:{self.port}"
        return self


class Config(BaseModel):
    listeners: List[ListenerConfig] = Field(min_length=1)


def load_config(path: Union[str, Path]) -> Config:
    """Reads and validates a configuration file.

    Raises:
        ConfigError: If the file cannot be read, is not valid YAML, or does not
            describe at least one valid listener.
    """
    try:
        text = Path(path).read_text()
    except OSError as e:
        raise ConfigError(f"failed to read config file: {e}") from e

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"failed to parse config file: {e}") from e

    try:
        return Config.model_validate(data or {})
    except ValidationError as e:
        raise ConfigError(f"invalid configuration: {e}") from e
