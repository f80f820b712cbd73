from pydantic import BaseModel, Field, model_validator


class TransactionSettings(BaseModel):
    max_retries: int = Field(3, ge=0)
    backoff_base_seconds: float = Field(0.2, ge=0)
    backoff_multiplier: float = 2.0
    backoff_cap_seconds: float = 5.0

    # Merchant order API; orders reserve local inventory when unset
    order_api_url: str | None = None
    order_api_key: str | None = None
    order_timeout_seconds: float = Field(10.0, gt=0)

    @model_validator(mode="after")
    def validate_backoff(self) -> "TransactionSettings":
        if self.backoff_multiplier < 1.0:
            raise ValueError("backoff_multiplier must be >= 1.0")
        if self.backoff_cap_seconds < self.backoff_base_seconds:
            raise ValueError("backoff_cap_seconds must be >= backoff_base_seconds")
        return self
