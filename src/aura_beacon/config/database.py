from pydantic import BaseModel


class DatabaseSettings(BaseModel):
    url: str = "sqlite:///./beacon.db"
    # In-memory store unless durability is required by the deployment
    durable: bool = False
