from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from app.core.config import settings
from app.core.logging import configure_logging
from app.dependencies import start_client, stop_client
from app.api.requests import router as requests_router
from app.api.trails import router as trails_router
from orchestration.client import SubmissionRejected
from tracking.tracker import RequestNotFound
from transport.errors import ConnectionLost, NoResponders, RequestTimeout

@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    await start_client()
    yield
    await stop_client()

app = FastAPI(
    title=settings.service_name,
    lifespan=lifespan
)

# CORS middleware - allow the desktop / web frontend to call API
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(requests_router, prefix="/v1")
app.include_router(trails_router, prefix="/v1")


def _error(status_code: int, kind: str, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": kind, "detail": str(exc)})


@app.exception_handler(RequestNotFound)
async def request_not_found(request: Request, exc: RequestNotFound):
    return _error(404, "not_found", exc)


@app.exception_handler(NoResponders)
async def no_responders(request: Request, exc: NoResponders):
    return _error(503, "no_responders", exc)


@app.exception_handler(RequestTimeout)
async def request_timeout(request: Request, exc: RequestTimeout):
    return _error(504, "timeout", exc)


@app.exception_handler(ConnectionLost)
async def connection_lost(request: Request, exc: ConnectionLost):
    return _error(502, "connection_lost", exc)


@app.exception_handler(SubmissionRejected)
async def submission_rejected(request: Request, exc: SubmissionRejected):
    return _error(502, "rejected", exc)


@app.get("/health")
async def health():
    return {"status": "ok"}
