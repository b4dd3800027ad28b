import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .core.database import engine, Base
from .api.quickbooks import models as quickbooks_models  # noqa: F401
from .api.categories import models as categories_models  # noqa: F401
from .api.category_rules import models as category_rules_models  # noqa: F401
from .api.quickbooks.routes import router as quickbooks_router
from .api.categories.routes import router as categories_router
from .api.category_rules.routes import router as category_rules_router
from .api.quickbooks.deps import get_token_manager
from .api.quickbooks.refresh_job import RefreshScheduler
from .core.config import QB_REFRESH_JOB_ENABLED

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(title="Receipt Bridge")
refresh_scheduler = RefreshScheduler()

origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(quickbooks_router)
app.include_router(categories_router)
app.include_router(category_rules_router)


@app.get("/")
async def api_home():
    return JSONResponse(content={"message": "Receipt Bridge - API Home"})


@app.get("/health")
async def health_check():
    return JSONResponse(content={"ok": True})


@app.on_event("startup")
async def startup():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    if QB_REFRESH_JOB_ENABLED:
        refresh_scheduler.start()


@app.on_event("shutdown")
async def shutdown():
    await refresh_scheduler.stop()
    await get_token_manager().wait_for_background_refreshes()
    await engine.dispose()
