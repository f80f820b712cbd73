from pydantic import BaseModel, Field, model_validator


class NegotiationSettings(BaseModel):
    """
    Rules for propositions and counter-offers.
    Prices are never offered below an item's floor price.
    """

    offer_ttl_seconds: float = Field(12 * 60 * 60, gt=0)  # 12 hours
    max_counter_rounds: int = Field(5, ge=1)
    min_counter_ratio: float = Field(0.5, ge=0.0, le=1.0)
    concession_rate: float = Field(0.5, gt=0.0, le=1.0)

    # Opening price discounts
    min_discount_percent: float = Field(5.0, ge=0.0)
    max_discount_percent: float = Field(25.0, lt=100.0)
    clearance_stock_threshold: int = 40

    max_propositions: int = Field(5, ge=1)
    archive_size: int = Field(1000, ge=1)

    @model_validator(mode="after")
    def validate_discounts(self) -> "NegotiationSettings":
        if self.min_discount_percent > self.max_discount_percent:
            raise ValueError("min_discount_percent cannot exceed max_discount_percent")
        return self
