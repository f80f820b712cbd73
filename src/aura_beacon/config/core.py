from pydantic import BaseModel, Field


class CoreSettings(BaseModel):
    """Identity of this Beacon and where AURA Core lives."""

    url: str = "http://localhost:8080"
    external_id: str = "simple-beacon-001"
    name: str = "Demo Electronics Store"
    description: str = ""
    domain: str = "demo-electronics.example.com"
    categories: list[str] = Field(
        default_factory=lambda: ["electronics", "audio", "wearables"]
    )
    capabilities: list[str] = Field(
        default_factory=lambda: ["offers", "inventory_check", "dynamic_pricing"]
    )
    timeout_seconds: float = Field(30.0, gt=0)
