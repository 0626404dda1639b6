from .request_id import RequestIDMiddleware, forwarded_ip, get_request_id, peer_ip
from .logging import LoggingMiddleware

__all__ = [
    "RequestIDMiddleware",
    "LoggingMiddleware",
    "get_request_id",
    "forwarded_ip",
    "peer_ip",
]
