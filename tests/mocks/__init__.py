"""
Mock implementations for external dependencies in monitor testing.
"""

from .mock_redis import MockRedis

from .mock_platform import (
    MockYouTubeClient,
    MockContentIdClient,
    MockOAuthClient,
    make_video,
    make_claim
)

__all__ = [
    # Queue transport
    'MockRedis',

    # Platform clients
    'MockYouTubeClient',
    'MockContentIdClient',
    'MockOAuthClient',

    # Test data utilities
    'make_video',
    'make_claim'
]
