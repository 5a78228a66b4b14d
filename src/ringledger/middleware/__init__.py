# Middleware modules
from ringledger.middleware.logging_filter import configure_logging, redact_sensitive_data
from ringledger.middleware.request_id import RequestIDMiddleware

__all__ = [
    "RequestIDMiddleware",
    "configure_logging",
    "redact_sensitive_data",
]
