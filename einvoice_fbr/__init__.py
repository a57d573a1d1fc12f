"""
FBR digital invoicing gateway.

    FbrClient           requests-based implementation of FbrGateway
    FbrEndpoints        base URL and per-mode paths
    parse_fbr_response  camelCase / PascalCase response normalisation
"""

from einvoice_fbr.client import FbrClient
from einvoice_fbr.config import DEFAULT_ENDPOINTS, FbrEndpoints
from einvoice_fbr.responses import NormalizedResponse, parse_fbr_response

__all__ = [
    "DEFAULT_ENDPOINTS",
    "FbrClient",
    "FbrEndpoints",
    "NormalizedResponse",
    "parse_fbr_response",
]
