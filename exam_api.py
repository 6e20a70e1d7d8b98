"""
Exam Synthesis API — Main Application
FastAPI application for blueprint-driven exam assembly, AI question synthesis
and the reference material corpus it is grounded in.
"""

from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from database.database import engine, Base
from database import models  # noqa: F401  (registers tables on Base.metadata)
from generation.config import get_config
from routers import generation, reference_materials


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup: create tables (+ Qdrant collection when that backend is on)."""
    Base.metadata.create_all(bind=engine)
    if get_config().vector_backend == "qdrant":
        from embeddings.qdrant_manager import get_qdrant_manager
        get_qdrant_manager().create_collection()
    yield


app = FastAPI(
    title="Exam Synthesis API",
    description="Blueprint-driven exam assembly with retrieval-grounded AI question synthesis",
    version="1.0.0",
    lifespan=lifespan,
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ─── Routers ───────────────────────────────────────────────────────────────────

app.include_router(reference_materials.router)   # /reference-materials
app.include_router(generation.router)            # /generation/*


@app.get("/")
def root():
    return {
        "name": "Exam Synthesis API",
        "version": "1.0.0",
        "endpoints": {
            "docs": "/docs",
            "generate_exam": "/generation/generate-exam",
            "synthesize_questions": "/generation/synthesize-questions",
            "reference_materials": "/reference-materials",
        },
    }


@app.get("/health")
def health_check():
    config = get_config()
    health = {
        "status": "healthy",
        "service": "exam-synthesis-api",
        "credentials": len(config.api_keys),
        "vector_backend": config.vector_backend,
    }
    if config.vector_backend == "qdrant":
        from embeddings.qdrant_manager import get_qdrant_manager
        health["vector_index"] = get_qdrant_manager().get_collection_info()
    return health


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
