from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse

from planner import services
from planner.config import configure_logging
from planner.errors import StoreError
from planner.health import summarize
from planner.providers import normalize_document_type
from planner.schemas import (
    ActivityOut,
    AnalysisOut,
    ContactCreate,
    ContactSubmissionOut,
    DocumentOut,
    DocumentSummary,
    HealthOut,
    InsightsOut,
    LoginRequest,
    StatsOut,
    UploadOut,
    UserCreate,
    UserOut,
)
from planner.services import Runtime, build_runtime

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = build_runtime()
    app.state.runtime = runtime
    try:
        yield
    finally:
        runtime.close()


app = FastAPI(
    title="Planner",
    version="0.1.0",
    description=(
        "Business document analysis API. Upload a plan, pitch deck or financial "
        "model and get a normalized scorecard back, even when no AI backend is reachable."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Auth", "description": "Register and log in."},
        {"name": "Documents", "description": "Upload, analyze and browse documents."},
        {"name": "Analyses", "description": "Scorecards produced for documents."},
        {"name": "Activity", "description": "Per-user activity feed and stats."},
        {"name": "Health", "description": "Reachability of every dependency."},
        {"name": "Contact", "description": "Contact form submissions."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


def _public_user(user) -> UserOut:
    return UserOut.model_validate(user.model_dump(exclude={"password"}))


# ---------------------------------------------------------------------------
# Routes: Auth
# ---------------------------------------------------------------------------


@app.post("/api/auth/register", response_model=UserOut, status_code=201,
          tags=["Auth"], summary="Create an account")
async def register(body: UserCreate, rt: Runtime = Depends(get_runtime)):
    # DuplicateUser is a StoreError -> 409
    return _public_user(services.register_user(rt.store, body))


@app.post("/api/auth/login", response_model=UserOut, tags=["Auth"], summary="Check credentials")
async def login(body: LoginRequest, rt: Runtime = Depends(get_runtime)):
    user = services.authenticate(rt.store, body.username, body.password)
    if user is None:
        raise HTTPException(401, "Invalid credentials")
    return _public_user(user)


# ---------------------------------------------------------------------------
# Routes: Documents
# ---------------------------------------------------------------------------


@app.post("/api/documents/upload", response_model=UploadOut, status_code=201,
          tags=["Documents"], summary="Upload a document and analyze it")
async def upload_document(
    file: UploadFile = File(...),
    user_id: int = Form(...),
    title: str = Form(""),
    document_type: str = Form(""),
    rt: Runtime = Depends(get_runtime),
):
    data = await file.read()
    if not data:
        raise HTTPException(400, "Uploaded file is empty")
    text, inline = services.decode_upload(data, file.content_type)
    title = title.strip() or file.filename or "Untitled document"
    stored = await services.store_upload(rt.object_store, file.filename or title, data,
                                         file.content_type, inline)
    kind = normalize_document_type(document_type or file.filename)
    outcome = await rt.orchestrator.process_upload(
        title=title,
        content=text,
        document_type=kind,
        user_id=user_id,
        content_type=file.content_type or "application/octet-stream",
        page_count=services.estimate_page_count(data, text),
        stored_content=stored,
    )
    return UploadOut(
        document=DocumentSummary.model_validate(outcome.document.model_dump()),
        analysis=outcome.analysis,
        provider=outcome.provider,
    )


@app.get("/api/documents", response_model=list[DocumentSummary],
         tags=["Documents"], summary="List a user's documents, newest first")
async def list_documents(user_id: int = Query(...), rt: Runtime = Depends(get_runtime)):
    return [DocumentSummary.model_validate(d.model_dump()) for d in rt.store.get_documents_by_user_id(user_id)]


@app.get("/api/documents/{document_id}", response_model=DocumentOut,
         tags=["Documents"], summary="Get one document with its content")
async def get_document(document_id: int, rt: Runtime = Depends(get_runtime)):
    doc = rt.store.get_document(document_id)
    if doc is None:
        raise HTTPException(404, "Document not found")
    return doc


# ---------------------------------------------------------------------------
# Routes: Analyses
# ---------------------------------------------------------------------------


@app.get("/api/analyses/document/{document_id}", response_model=AnalysisOut,
         tags=["Analyses"], summary="Get the scorecard for a document")
async def get_analysis_for_document(document_id: int, rt: Runtime = Depends(get_runtime)):
    analysis = rt.store.get_analysis_by_document_id(document_id)
    if analysis is None:
        raise HTTPException(404, "Analysis not found")
    return analysis


# ---------------------------------------------------------------------------
# Routes: Activity & Stats
# ---------------------------------------------------------------------------


@app.get("/api/activities", response_model=list[ActivityOut],
         tags=["Activity"], summary="Recent activity for a user, newest first")
async def list_activities(
    user_id: int = Query(...),
    limit: int = Query(10, ge=1, le=100),
    rt: Runtime = Depends(get_runtime),
):
    return rt.store.get_activities(user_id, limit)


@app.get("/api/stats", response_model=StatsOut, tags=["Activity"],
         summary="Document count and average score for a user")
async def get_stats(user_id: int = Query(...), rt: Runtime = Depends(get_runtime)):
    return services.compute_stats(rt.store, user_id)


@app.get("/api/insights", response_model=InsightsOut, tags=["Activity"],
         summary="Strategic insights over a user's recent analyses")
async def get_insights(user_id: int = Query(...), rt: Runtime = Depends(get_runtime)):
    return await services.generate_insights(
        rt.store, rt.orchestrator.chain, user_id, timeout=rt.settings.provider_timeout,
    )


# ---------------------------------------------------------------------------
# Routes: Health
# ---------------------------------------------------------------------------


@app.get("/api/health", response_model=HealthOut, tags=["Health"],
         summary="Probe every dependency in parallel")
async def health(rt: Runtime = Depends(get_runtime)):
    status = await rt.health.check_all()
    return HealthOut(
        services=status,
        healthy=summarize(status),
        enabled=rt.settings.enabled_services(),
        timestamp=datetime.now(UTC),
    )


# ---------------------------------------------------------------------------
# Routes: Contact
# ---------------------------------------------------------------------------


@app.post("/api/contact", response_model=ContactSubmissionOut, status_code=201,
          tags=["Contact"], summary="Submit the contact form")
async def submit_contact(body: ContactCreate, rt: Runtime = Depends(get_runtime)):
    sub = rt.store.create_contact_submission(
        name=body.name,
        email=body.email,
        company=body.company,
        message=body.message,
        extra=dict(body.model_extra or {}),
    )
    log.info("Contact submission %d from %s", sub.id, sub.email)
    return sub


@app.get("/api/contact", response_model=list[ContactSubmissionOut],
         tags=["Contact"], summary="List contact submissions, newest first")
async def list_contact(limit: int | None = Query(None, ge=1), rt: Runtime = Depends(get_runtime)):
    return rt.store.get_contact_submissions(limit)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    configure_logging()
    uvicorn.run("planner.app:app", host="127.0.0.1", port=8001)


if __name__ == "__main__":
    main()
