"""
Site collaborator interfaces and browser execution contexts.
"""

from .base import (
    ListingExtractor,
    DetailExtractor,
    PageNavigator,
    ExecutionContextFactory,
    AuthSession,
    ResumeStore,
    ProfileStore
)
from .browser import PlaywrightContextFactory

__all__ = [
    'ListingExtractor',
    'DetailExtractor',
    'PageNavigator',
    'ExecutionContextFactory',
    'AuthSession',
    'ResumeStore',
    'ProfileStore',
    'PlaywrightContextFactory'
]
