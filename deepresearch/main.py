from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from deepresearch.api.routes import research
from deepresearch.config import settings
from deepresearch.container import build_services


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Tests and embedding processes may wire their own services.
    owned = getattr(app.state, "services", None) is None
    if owned:
        app.state.services = await build_services()
    yield
    if owned:
        await app.state.services.aclose()
        app.state.services = None


app = FastAPI(
    title="DeepResearch",
    description="Deep research tasks with replayable progress updates",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routes
app.include_router(research.router)


@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "deepresearch"}
