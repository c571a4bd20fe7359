from typing import Annotated

from fastapi import APIRouter, Depends, Request

from boardcache.core.runtime import Runtime

router = APIRouter(tags=["cache"])


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


RuntimeDep = Annotated[Runtime, Depends(get_runtime)]


@router.get("/health")
async def health_check(runtime: RuntimeDep):
    """Cache memory usage and whether the cache is serving normally"""
    return await runtime.cache.health()


@router.post("/flush")
async def flush_cache(runtime: RuntimeDep):
    """Drop every cache entry (emergency recovery)"""
    await runtime.cache.flush()
    return {"success": True, "message": "Cache flushed"}


@router.get("/cache/stats")
async def cache_stats(runtime: RuntimeDep):
    return await runtime.cache.get_stats()
