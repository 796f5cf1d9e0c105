"""Secure unseal boundary: authorization, local and remote unsealers."""

from .policy import AccessPolicy
from .service import LocalUnsealer, UnsealService, Unsealer
from .client import CertificateClient, RemoteUnsealer

__all__ = [
    "AccessPolicy",
    "LocalUnsealer",
    "UnsealService",
    "Unsealer",
    "CertificateClient",
    "RemoteUnsealer",
]
