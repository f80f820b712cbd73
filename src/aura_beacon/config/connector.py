from typing import Literal

from pydantic import BaseModel, Field, model_validator


class ConnectorSettings(BaseModel):
    url: str = "ws://localhost:8080"
    queue_capacity: int = Field(1000, gt=0)
    overflow_policy: Literal["reject", "drop_oldest"] = "reject"

    # Reconnect backoff
    backoff_base_seconds: float = Field(0.5, gt=0)
    backoff_multiplier: float = 2.0
    backoff_cap_seconds: float = 30.0
    max_retries: int = Field(10, ge=0)
    connect_timeout_seconds: float = Field(10.0, gt=0)

    @model_validator(mode="after")
    def validate_backoff(self) -> "ConnectorSettings":
        if self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be >= 1.0")
        if self.backoff_cap_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_cap_seconds must be >= backoff_base_seconds")
        return self
