"""
Error taxonomy for the cache and mutation core.

Cache-side errors (CacheUnavailable, EvictionExhausted) are recovered where
they are raised and only ever logged. Mutation-side errors are surfaced to the
caller that issued the mutation.
"""


class BoardCacheError(Exception):
    """Base class for every error raised by boardcache."""

    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class CacheUnavailable(BoardCacheError):
    """The cache backend cannot be reached."""

    retryable = True


class EvictionExhausted(BoardCacheError):
    """Eviction could not free enough space for a cache write."""

    retryable = True


class InvalidMutation(BoardCacheError):
    """A payload is malformed or does not apply to the current board."""


class MutationTimeout(BoardCacheError):
    """The source of truth did not answer within the persist timeout."""

    retryable = True


class MutationFailed(BoardCacheError):
    """The source of truth rejected or failed to persist a mutation."""

    retryable = True


class AggregateNotFound(BoardCacheError):
    """The source of truth has no board for the requested key."""
