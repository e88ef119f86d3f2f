#!/usr/bin/env python3
"""
Local control API for the Supabase invoice downloader.
Binds to the loopback interface only; a static front-end calls it to trigger downloads.
"""
import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional, Tuple

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from orchestrator import DownloadOrchestrator
from supabase_agent import WorkflowOptions, WorkflowResult, configure_logging

load_dotenv()

# Configuration
HOST = "127.0.0.1"
DEFAULT_PORT = 3939

logger = logging.getLogger("invoice_api")


def cors_origins_from_env() -> List[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS", "*")
    origins = [o.strip() for o in raw.split(",") if o.strip()]
    return origins or ["*"]


@asynccontextmanager
async def lifespan(app: FastAPI):
    log_file = configure_logging(WorkflowOptions.from_env().log_dir)
    logger.info(f"Logging to {log_file}")
    yield


app = FastAPI(
    lifespan=lifespan,
    title="Supabase Invoice Downloader",
    version="1.0.0",
    description="Loopback API that drives a browser session to download the latest Supabase invoice",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins_from_env(),
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)

orchestrator = DownloadOrchestrator()


class DownloadRequest(BaseModel):
    github_username: Optional[str] = Field(None, alias="githubUsername", description="GitHub username for unattended login")
    github_password: Optional[str] = Field(None, alias="githubPassword", description="GitHub password for unattended login")


class DownloadResponse(BaseModel):
    status: str = Field(..., description="success or error")
    message: str = Field(..., description="Human-readable result message")


def render_outcome(result: WorkflowResult) -> Tuple[int, DownloadResponse]:
    if result.ok:
        return 200, DownloadResponse(status="success", message=result.message)
    if result.busy:
        return 409, DownloadResponse(status="error", message=result.message)
    return 500, DownloadResponse(status="error", message=f"Invoice download failed: {result.message}")


@app.exception_handler(RequestValidationError)
async def invalid_request(request: Request, exc: RequestValidationError):
    # The default 422 body echoes the submitted input, password included
    logger.warning(f"Rejected malformed request to {request.url.path} ({len(exc.errors())} validation errors)")
    body = DownloadResponse(status="error", message="Invalid request body")
    return JSONResponse(status_code=400, content=body.model_dump())


@app.get("/")
async def root():
    """API root endpoint with documentation"""
    return {
        "service": "Supabase Invoice Downloader",
        "version": "1.0.0",
        "endpoints": {
            "health": "/health",
            "download": "/api/download",
            "invoices": "/api/invoices",
        },
        "download_in_progress": orchestrator.in_progress,
    }


@app.get("/health")
async def health():
    """Liveness check; independent of any running download"""
    return {"status": "ok"}


@app.post("/api/download", response_model=DownloadResponse)
async def download(payload: Optional[DownloadRequest] = None):
    """
    Run one invoice download and hold the request open until it finishes.

    First-time logins may wait several minutes for the operator to finish
    GitHub authentication in the browser window.
    """
    logger.info("🎯 Download request received")
    payload = payload or DownloadRequest()

    result = await orchestrator.request_download(
        github_username=payload.github_username,
        github_password=payload.github_password,
    )
    status_code, body = render_outcome(result)
    logger.info(f"Responding {status_code}: {body.message}")
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.get("/api/invoices")
async def list_invoices():
    """List invoice PDFs already downloaded"""
    download_dir = WorkflowOptions.from_env().download_dir
    pdf_files = sorted(f.name for f in download_dir.glob("supabase-invoice-*.pdf")) if download_dir.is_dir() else []
    return {
        "invoices": pdf_files,
        "total_files": len(pdf_files),
    }


def main() -> None:
    import uvicorn

    port = int(os.getenv("PORT", str(DEFAULT_PORT)))
    configure_logging(WorkflowOptions.from_env().log_dir)
    logger.info(f"🚀 Starting invoice API on http://{HOST}:{port}")
    uvicorn.run(app, host=HOST, port=port)


if __name__ == "__main__":
    main()
