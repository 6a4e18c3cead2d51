"""
Campaign Notes API - Knowledge Graph Service for Campaign Notes

Handles:
- Note intake (validation, deterministic note ids, background processing)
- Artifact & relationship extraction (AI microservice)
- Deduplication (ANN candidates + LLM adjudication, merge proposals)
- Store sync (ChromaDB vectors, Neo4j graph) with retry and recovery
"""
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from notes import routes as note_routes
from notes.dependencies import build_services, get_services, set_services
from database import connect_db, disconnect_db
from config import settings

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Campaign Notes API",
    version="1.0.0",
    description="Campaign note extraction, deduplication and knowledge graph service"
)

# Lifecycle events
@app.on_event("startup")
async def startup():
    connect_db()
    services = build_services()
    set_services(services)
    await services.pool.start()
    interrupted = services.pipeline.interrupted_tasks()
    if interrupted:
        services.pool.feed(interrupted)

@app.on_event("shutdown")
async def shutdown():
    services = get_services()
    await services.pool.shutdown(timeout=settings.NOTE_SHUTDOWN_TIMEOUT)
    services.graph_store.close()
    set_services(None)
    disconnect_db()

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers (router already has '/campaigns/{campaign_uuid}' prefix)
app.include_router(note_routes.router, tags=["Notes"])

@app.get("/")
def root():
    return {
        "service": "campaign-notes-api",
        "version": "1.0.0",
        "description": "Campaign note knowledge graph service"
    }

@app.get("/health")
def health():
    return {"status": "healthy", "service": "campaign-notes-api"}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8002)
