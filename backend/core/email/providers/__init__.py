"""Mailbox provider adapters"""
from .base import (
    Provider,
    MessageOperation,
    Candidate,
    CandidateListing,
    ProviderMessage,
    FetchOptions,
    FetchResult,
    DraftAttachment,
    Profile,
    ProviderAdapter,
    ProviderAdapters,
)
from .gmail import GmailAdapter
from .outlook import OutlookAdapter

__all__ = [
    "Provider",
    "MessageOperation",
    "Candidate",
    "CandidateListing",
    "ProviderMessage",
    "FetchOptions",
    "FetchResult",
    "DraftAttachment",
    "Profile",
    "ProviderAdapter",
    "ProviderAdapters",
    "GmailAdapter",
    "OutlookAdapter",
]
