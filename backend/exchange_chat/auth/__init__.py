"""Authentication boundary (JWT access tokens).

The chat service does not issue sessions; it verifies bearer tokens produced
by the authentication service and extracts the user id.
"""
from .tokens import create_access_token, decode_access_token, extract_bearer_token

__all__ = [
    "create_access_token",
    "decode_access_token",
    "extract_bearer_token",
]
