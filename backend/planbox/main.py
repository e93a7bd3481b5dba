from contextlib import asynccontextmanager
from functools import lru_cache
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from planbox.analysis import analyze_site
from planbox.conversation import SessionRegistry
from planbox.errors import PlanParseError, SandboxError
from planbox.llm import generate_text
from planbox.models import AnalysisResult
from planbox.plan_normalizer import coerce_plan
from planbox.sandbox import SandboxOrchestrator
from planbox.sse_utils import SSE_HEADERS, sse_event
from planbox.store import get_project_store


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.sessions = SessionRegistry()
    yield


app = FastAPI(title="Planbox API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Collaborators (overridable in tests via app.dependency_overrides)
# ---------------------------------------------------------------------------

@lru_cache()
def get_orchestrator() -> SandboxOrchestrator:
    return SandboxOrchestrator()


def get_store():
    return get_project_store()


def get_llm():
    return generate_text


def get_analyzer():
    return analyze_site


def get_sessions(request: Request) -> SessionRegistry:
    if not hasattr(request.app.state, "sessions"):
        request.app.state.sessions = SessionRegistry()
    return request.app.state.sessions


def _error_response(e: Exception, status_code: int = 500) -> JSONResponse:
    return JSONResponse(
        {
            "error": str(e) or "An unknown error occurred",
            "details": getattr(e, "logs", "") or repr(e),
        },
        status_code=status_code,
    )


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class GenerateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    contents: list
    model: Optional[str] = None
    apply_mode: bool = Field(False, alias="applyMode")


class AnalyseRequest(BaseModel):
    url: str


class ProjectSaveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    files: dict[str, str]
    dependencies: Optional[dict[str, str]] = None
    dev_dependencies: Optional[dict[str, str]] = Field(None, alias="devDependencies")
    analysis: Optional[AnalysisResult] = None


class SessionCreateRequest(BaseModel):
    model: Optional[str] = None


class SessionUpdateRequest(BaseModel):
    apply_mode: Optional[bool] = None
    selected_project: Optional[str] = None
    project_name: Optional[str] = None


class ChatRequest(BaseModel):
    message: str


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@app.get("/")
def root():
    return {"message": "Backend is running"}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.post("/api/sandbox")
async def sandbox_endpoint(request: Request, orchestrator: SandboxOrchestrator = Depends(get_orchestrator)):
    """Single action endpoint: create | applyPlan | install | build | start."""
    try:
        try:
            body = await request.json()
        except Exception as e:
            print(f"[sandbox] Failed to parse request JSON: {e}")
            raise PlanParseError("Invalid JSON in request body")
        if not isinstance(body, dict):
            body = {}

        action = body.get("action")
        sandbox_id = body.get("sandboxId")

        orchestrator.check_config()
        print(f"[sandbox] API called with action: {action}")

        if action == "create":
            return {"sandboxId": await orchestrator.create()}

        if action == "applyPlan":
            plan = coerce_plan(body.get("plan") or {})
            result = await orchestrator.apply_plan(plan, sandbox_id)
            return {
                "success": True,
                "sandboxId": result.sandbox_id,
                "message": "Plan applied successfully",
                "filesWritten": len(result.files_written),
                "skipped": result.skipped,
                "deleted": result.deleted,
            }

        if action in ("install", "build", "start"):
            if not sandbox_id:
                raise SandboxError("sandboxId missing")
            if action == "install":
                return {"success": True, "logs": await orchestrator.install(sandbox_id)}
            if action == "build":
                return {"success": True, "logs": await orchestrator.build(sandbox_id)}
            return {"success": True, "url": await orchestrator.start(sandbox_id)}

        return JSONResponse({"error": f"Unknown action: {action}"}, status_code=400)

    except Exception as e:
        print(f"[sandbox] API error: {e}")
        return _error_response(e)


@app.get("/api/sandbox/{sandbox_id}/logs")
async def sandbox_logs(sandbox_id: str, lines: int = 200,
                       orchestrator: SandboxOrchestrator = Depends(get_orchestrator)):
    """Tail of the Next.js server log inside the sandbox."""
    try:
        logs = await orchestrator.logs(sandbox_id, lines=min(max(lines, 1), 2000))
        return {"sandbox_id": sandbox_id, "logs": logs}
    except Exception as e:
        return _error_response(e)


@app.post("/api/gemini")
async def generate_endpoint(request: GenerateRequest, llm=Depends(get_llm)):
    try:
        text = await llm(request.contents, request.model, request.apply_mode)
        return {"text": text}
    except Exception as e:
        print(f"[llm] Error: {e}")
        return JSONResponse({"error": str(e)}, status_code=500)


@app.post("/api/analyse")
async def analyse_endpoint(request: AnalyseRequest, analyzer=Depends(get_analyzer)):
    try:
        analysis = await analyzer(request.url)
        return analysis.model_dump(by_alias=True)
    except Exception as e:
        print(f"[analyse] Error: {e}")
        return JSONResponse({"error": str(e)}, status_code=500)


# ---------------------------------------------------------------------------
# Stored projects
# ---------------------------------------------------------------------------

@app.get("/api/projects")
async def list_projects(store=Depends(get_store)):
    return {"projects": [p.model_dump(by_alias=True, exclude_none=True) for p in store.list()]}


@app.get("/api/projects/{name}")
async def get_project(name: str, store=Depends(get_store)):
    project = store.get(name)
    if project is None:
        raise HTTPException(status_code=404, detail="Project not found")
    return project.model_dump(by_alias=True, exclude_none=True)


@app.put("/api/projects/{name}")
async def save_project(name: str, request: ProjectSaveRequest, store=Depends(get_store)):
    saved = store.save(name, request.files, request.dependencies, request.dev_dependencies, request.analysis)
    if not saved:
        raise HTTPException(status_code=500, detail="Failed to save project")
    return {"status": "saved", "name": name, "files": len(request.files)}


@app.delete("/api/projects/{name}")
async def delete_project(name: str, store=Depends(get_store)):
    if not store.delete(name):
        raise HTTPException(status_code=500, detail="Failed to delete project")
    return {"status": "deleted"}


@app.delete("/api/projects")
async def clear_projects(store=Depends(get_store)):
    if not store.clear():
        raise HTTPException(status_code=500, detail="Failed to clear projects")
    return {"status": "cleared"}


# ---------------------------------------------------------------------------
# Chat sessions (SSE)
# ---------------------------------------------------------------------------

@app.post("/api/sessions")
async def create_session(request: SessionCreateRequest, sessions: SessionRegistry = Depends(get_sessions)):
    return sessions.create(model=request.model).to_dict()


def _session_or_404(sessions: SessionRegistry, session_id: str):
    session = sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


@app.get("/api/sessions/{session_id}")
async def get_session(session_id: str, sessions: SessionRegistry = Depends(get_sessions)):
    return _session_or_404(sessions, session_id).to_dict()


@app.patch("/api/sessions/{session_id}")
async def update_session(session_id: str, request: SessionUpdateRequest,
                         sessions: SessionRegistry = Depends(get_sessions)):
    session = _session_or_404(sessions, session_id)
    if request.apply_mode is not None:
        session.apply_mode = request.apply_mode
    if request.selected_project is not None:
        session.selected_project = request.selected_project
    if request.project_name is not None:
        session.project_name = request.project_name
    return session.to_dict()


@app.delete("/api/sessions/{session_id}")
async def delete_session(session_id: str, sessions: SessionRegistry = Depends(get_sessions)):
    if not sessions.drop(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    return {"status": "deleted"}


@app.post("/api/sessions/{session_id}/chat")
async def session_chat(
    session_id: str,
    request: ChatRequest,
    sessions: SessionRegistry = Depends(get_sessions),
    llm=Depends(get_llm),
    analyzer=Depends(get_analyzer),
    store=Depends(get_store),
    orchestrator: SandboxOrchestrator = Depends(get_orchestrator),
):
    """Run one chat turn, streaming messages and sandbox progress via SSE."""
    session = _session_or_404(sessions, session_id)
    if not request.message.strip():
        raise HTTPException(status_code=400, detail="message is required")

    async def event_stream():
        async for event, data in session.send(
            request.message.strip(),
            llm=llm,
            analyzer=analyzer,
            store=store,
            orchestrator=orchestrator,
        ):
            yield sse_event(event, data)
        yield sse_event("done", {"sandbox_id": session.sandbox_id, "preview_url": session.preview_url})

    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=SSE_HEADERS)
