from .controller import TunnelController, StartResult
from .transport import SecureTransport, DirectPath, TransportError

__all__ = ["TunnelController", "StartResult", "SecureTransport", "DirectPath", "TransportError"]
