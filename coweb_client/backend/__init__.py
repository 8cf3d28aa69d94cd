"""Transport collaborators: admin/credential HTTP, session websocket, bridge."""
from .bridge import SessionBridge
from .http_client import CowebHttpClient
from .ws_client import BridgeWebSocketClient

__all__ = [
    "BridgeWebSocketClient",
    "CowebHttpClient",
    "SessionBridge",
]
