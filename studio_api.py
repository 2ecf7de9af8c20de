"""
Studio API: HTTP endpoints behind the enrichment dashboard
Upload contacts, configure and control the enrichment run, read logs and export results
"""
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from loguru import logger

from contacts import ContactParseError
from enrich_function import router as enrichment_function_router
from exporter import ExportError, export_filename
from models import CamelModel, EnrichmentOptions
from orchestrator import ValidationError
from session_manager import SessionConflictError, StudioSession, get_session_manager


class SettingsRequest(CamelModel):
    """Request model for updating run configuration"""
    api_key: Optional[str] = None
    batch_size: Optional[int] = None
    retry_attempts: Optional[int] = None
    options: Optional[EnrichmentOptions] = None
    exclude_duplicates: Optional[bool] = None


class ContactsResponse(CamelModel):
    """Response model for contact uploads"""
    contacts: int
    duplicates: int
    message: str


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan manager"""
    logger.info("Starting Apollo Enrichment Studio API")
    yield
    logger.info("Shutting down Apollo Enrichment Studio API")
    await get_session_manager().shutdown()


app = FastAPI(
    title="Apollo Enrichment Studio",
    description="Batch contact enrichment dashboard backend",
    version="1.0.0",
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

# The dashboard posts batches to the function on the same origin
app.include_router(enrichment_function_router)


@app.get("/ping")
async def ping():
    """Simple ping endpoint to check service availability"""
    return {
        "ping": "pong",
        "timestamp": datetime.utcnow().isoformat() + "Z",
        "service": "apollo-enrichment-studio"
    }


@app.get("/health")
async def health_check():
    """Basic health check endpoint"""
    return {"status": "healthy", "service": "apollo-enrichment-studio"}


@app.post("/contacts", response_model=ContactsResponse, response_model_by_alias=True)
async def upload_contacts(request: Request, filename: str = "upload.csv",
                          session: StudioSession = Depends(get_session_manager)):
    """Upload a CSV file (raw request body) of contacts"""
    try:
        text = (await request.body()).decode("utf-8-sig")
        contacts = session.load_csv(text, filename)
        return ContactsResponse(
            contacts=len(contacts),
            duplicates=session.duplicates,
            message=f"Uploaded {len(contacts)} unique contacts ({session.duplicates} duplicates removed)"
        )
    except SessionConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except (ContactParseError, UnicodeDecodeError) as e:
        raise HTTPException(status_code=400, detail=f"Error parsing CSV: {e}")
    except Exception as e:
        logger.error(f"Failed to upload contacts: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to upload contacts: {str(e)}")


@app.post("/contacts/sample", response_model=ContactsResponse, response_model_by_alias=True)
async def load_sample_contacts(session: StudioSession = Depends(get_session_manager)):
    """Load the built-in sample contacts"""
    try:
        contacts = session.load_sample()
        return ContactsResponse(
            contacts=len(contacts),
            duplicates=0,
            message=f"Loaded {len(contacts)} sample contacts for testing"
        )
    except SessionConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))


@app.delete("/contacts")
async def clear_contacts(session: StudioSession = Depends(get_session_manager)):
    """Clear contacts, results and statistics"""
    try:
        session.clear()
        return {"message": "Cleared all data"}
    except SessionConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))


@app.put("/settings")
async def update_settings(request: SettingsRequest, session: StudioSession = Depends(get_session_manager)):
    """Update API key, batch size, retry attempts and enrichment options"""
    try:
        session.update_settings(
            api_key=request.api_key,
            batch_size=request.batch_size,
            retry_attempts=request.retry_attempts,
            options=request.options,
            exclude_duplicates=request.exclude_duplicates
        )
        return session.status()["settings"]
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SessionConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))


@app.post("/enrichment/start")
async def start_enrichment(session: StudioSession = Depends(get_session_manager)):
    """Start enriching the uploaded contacts"""
    try:
        session.start()
        logger.info("Enrichment started via API")
        return {"message": "Enrichment started", "status": session.status()}
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except SessionConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except Exception as e:
        logger.error(f"Failed to start enrichment: {e}")
        raise HTTPException(status_code=500, detail=f"Failed to start enrichment: {str(e)}")


@app.post("/enrichment/pause")
async def pause_enrichment(session: StudioSession = Depends(get_session_manager)):
    """Pause the running enrichment at the next batch boundary"""
    if not session.pause():
        raise HTTPException(status_code=409, detail="No running enrichment to pause")
    return {"message": "Enrichment will pause after the current batch"}


@app.post("/enrichment/resume")
async def resume_enrichment(session: StudioSession = Depends(get_session_manager)):
    """Resume a paused enrichment over the remaining contacts"""
    try:
        session.resume()
        return {"message": "Enrichment resumed", "status": session.status()}
    except SessionConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))


@app.get("/enrichment/status")
async def enrichment_status(session: StudioSession = Depends(get_session_manager)):
    """Current run state, progress and statistics"""
    return session.status()


@app.get("/logs")
async def get_logs(limit: int = 100, session: StudioSession = Depends(get_session_manager)):
    """Most recent log entries, newest first"""
    return {"logs": [entry.to_wire() for entry in list(session.logs)[:limit]]}


@app.get("/export")
async def export_results(session: StudioSession = Depends(get_session_manager)):
    """Download the enriched contacts as CSV"""
    try:
        content = session.export()
    except ExportError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return Response(
        content=content,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{export_filename()}"'}
    )
