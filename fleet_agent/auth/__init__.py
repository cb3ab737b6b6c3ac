"""
Credential lifecycle: token pair, refresh and rotation.
"""
from .credentials import CredentialPair, validate_token_format
from .credential_manager import CredentialManager

__all__ = [
    'CredentialPair',
    'CredentialManager',
    'validate_token_format'
]
