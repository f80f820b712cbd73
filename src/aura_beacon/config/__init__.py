from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from .connector import ConnectorSettings
from .core import CoreSettings
from .database import DatabaseSettings
from .negotiation import NegotiationSettings
from .server import ServerSettings
from .transaction import TransactionSettings


class BeaconSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        env_prefix="AURA_BEACON_",
        extra="ignore",
    )

    connector: ConnectorSettings = Field(default_factory=ConnectorSettings)
    negotiation: NegotiationSettings = Field(default_factory=NegotiationSettings)
    transaction: TransactionSettings = Field(default_factory=TransactionSettings)
    core: CoreSettings = Field(default_factory=CoreSettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)


@lru_cache
def get_settings() -> BeaconSettings:
    return BeaconSettings()


__all__ = [
    "BeaconSettings",
    "ConnectorSettings",
    "CoreSettings",
    "DatabaseSettings",
    "NegotiationSettings",
    "ServerSettings",
    "TransactionSettings",
    "get_settings",
]
