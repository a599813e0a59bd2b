"""paho-mqtt backed transport."""
from .transport import PahoTransport

__all__ = ["PahoTransport"]
