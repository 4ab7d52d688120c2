"""
FastAPI Dependency Injection
============================

The SyncEngine is built once in the application lifespan and stored on
``app.state.engine``. Routes receive it (and the settings) through the
``Annotated`` aliases below instead of reaching for globals:

    @router.get("/stats")
    async def stats(engine: EngineDep):
        return engine.get_stats()

Because the engine lives on the app instance, tests can build an app
around their own engine (fake data service, in-memory transport) and every
route sees exactly that instance.
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from querysync.core.config.settings import Settings
from querysync.engine import SyncEngine


def get_engine(request: Request) -> SyncEngine:
    """
    Retrieve the SyncEngine from application state.

    Raises:
        HTTPException(503): If the lifespan has not created the engine yet
    """
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync engine is not initialised; application startup did not complete",
        )
    return engine


def get_engine_settings(engine: Annotated[SyncEngine, Depends(get_engine)]) -> Settings:
    """Settings the running engine was built with."""
    return engine.settings


# Route signature aliases.
EngineDep = Annotated[SyncEngine, Depends(get_engine)]
SettingsDep = Annotated[Settings, Depends(get_engine_settings)]
