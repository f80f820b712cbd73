from .websocket import WebSocketTransport

__all__ = ["WebSocketTransport"]
