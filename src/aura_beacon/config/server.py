from pydantic import BaseModel, HttpUrl


class ServerSettings(BaseModel):
    log_level: str = "info"
    log_format: str = "json"  # "json" or "console"

    # Telemetry
    telemetry_enabled: bool = False
    otel_service_name: str = "aura-beacon"
    otel_exporter_otlp_endpoint: HttpUrl = HttpUrl("http://jaeger:4317")

    # Event stream; events are only logged when unset
    nats_url: str | None = None
