from functools import wraps
from typing import Callable


def async_cached(category: str, key_builder: Callable[..., str]):
    """
    Decorator for async service methods. The service must expose a
    CacheStrategy as `self.cache`; key_builder receives the method's
    args/kwargs (without self).
    Example:
      @async_cached("board", lambda key: str(key))
      async def fetch_board(self, key): ...
    """

    def decorator(fn: Callable):
        @wraps(fn)
        async def wrapper(self, *args, **kwargs):
            key = key_builder(*args, **kwargs)

            # loader closure calls the original method
            async def loader():
                value = await fn(self, *args, **kwargs)
                if value is None:
                    return None
                if hasattr(value, "model_dump"):
                    return value.model_dump(mode="json")
                return value

            return await self.cache.get(key, category, loader=loader)

        return wrapper

    return decorator


def async_cached_expire(category: str, key_builder: Callable[..., str]):
    """Delete the cached item after the wrapped write has completed."""

    def decorator(fn: Callable):
        @wraps(fn)
        async def wrapper(self, *args, **kwargs):
            key = key_builder(*args, **kwargs)
            result = await fn(self, *args, **kwargs)
            await self.cache.delete(key, category)
            return result

        return wrapper

    return decorator
