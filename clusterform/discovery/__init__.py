from .client import DiscoveryClient
from .registry import (
    CandidateRecord,
    HttpRegistry,
    InMemoryRegistry,
    Registry,
    StaticFileRegistry,
    parse_registry_document,
)

__all__ = [
    "CandidateRecord",
    "DiscoveryClient",
    "HttpRegistry",
    "InMemoryRegistry",
    "Registry",
    "StaticFileRegistry",
    "parse_registry_document",
]
