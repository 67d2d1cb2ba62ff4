"""Public API surface for HTTP serving and Python-first interfaces."""

from branchline.api.app import create_app
from branchline.api.contracts import AdvanceRequest, CreditRequest, NavigationResponse
from branchline.api.oidc import OidcClaims, OidcTokenValidator
from branchline.api.python_interface import AuthSession, ReaderApiClient, ReaderApiError

__all__ = [
    "AdvanceRequest",
    "AuthSession",
    "CreditRequest",
    "NavigationResponse",
    "OidcClaims",
    "OidcTokenValidator",
    "ReaderApiClient",
    "ReaderApiError",
    "create_app",
]
