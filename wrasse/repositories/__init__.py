"""Clients for the services the daemon talks to."""

from wrasse.repositories.claim_store import ClaimStore, HttpClaimStore
from wrasse.repositories.directory import HttpJobDirectory, JobDirectory
from wrasse.repositories.identity import HttpIdentityClient, IdentityService
from wrasse.repositories.object_store import HttpObjectStore, ObjectStore

__all__ = [
    "ClaimStore",
    "HttpClaimStore",
    "HttpJobDirectory",
    "JobDirectory",
    "HttpIdentityClient",
    "IdentityService",
    "HttpObjectStore",
    "ObjectStore",
]
