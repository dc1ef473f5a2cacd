"""Configuration schema using Pydantic."""

from typing import Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict


class Base(BaseModel):
    """Base model that accepts both camelCase and snake_case keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BrokerConfig(Base):
    """MQTT broker connection."""

    host: str = "ssca.desrochers.space"
    port: int = 1883
    token: str = ""  # JWT; sent as MQTT username, its "id" claim is the client id
    password: str = " "  # Broker ignores it but rejects an empty one
    keepalive: int = 60
    connect_timeout: float = 10.0  # Seconds to wait for CONNACK
    qos: Literal[0, 1, 2] = 1


class UploaderConfig(Base):
    """Transfer session tuning."""

    chunk_size: int = Field(default=4096, gt=0)  # Bytes per data message
    window: int = Field(default=1, ge=1)  # Chunks allowed ahead of ready signals
    handshake_interval: float = Field(default=2.0, gt=0)  # Seconds between start announcements
    progress_interval: float = Field(default=1.0, gt=0)  # Seconds between progress reports
    handshake_exit: Literal["ready", "any"] = "ready"  # "any": first message on any topic ends handshake
    stall_timeout: float = Field(default=0.0, ge=0)  # 0 = wait forever for the next ready


class Config(BaseSettings):
    """Root configuration for otapush."""

    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    uploader: UploaderConfig = Field(default_factory=UploaderConfig)
    devices_dir: str = "../devices"
    firmware_path: str = "./firmware.bin"
    build_command: str = "./compile.sh"  # Run before each upload; empty = skip
    # Bare TOKEN in the environment or .env, as the device tooling exports it.
    token: str = Field(default="", validation_alias=AliasChoices("TOKEN", "token"))

    @property
    def auth_token(self) -> str:
        return self.broker.token or self.token

    model_config = SettingsConfigDict(
        env_prefix="OTAPUSH_",
        env_nested_delimiter="__",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )
