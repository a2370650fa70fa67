from __future__ import annotations

from typing import AsyncIterator, Optional

from fastapi import (
    APIRouter,
    Depends,
    File,
    Header,
    HTTPException,
    Query,
    UploadFile,
)
from fastapi.responses import StreamingResponse

from kanari.api.schemas import (
    AuthResponse,
    ChatCreateRequest,
    ChatResponse,
    ChatUpdateRequest,
    ContextPreviewResponse,
    Envelope,
    FileRecordResponse,
    LoginRequest,
    MessageCreateRequest,
    MessageResponse,
    ModelListResponse,
    ModelResponse,
    ProjectCreateRequest,
    ProjectResponse,
    ProjectUpdateRequest,
    SignupRequest,
    UserResponse,
)
from kanari.logging import get_logger
from kanari.service import model_registry
from kanari.service.auth import AuthContext, IssuedTokens
from kanari.service.runtime import check_rate_limit, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


async def _enforce_rate_limit(runtime, key: str, limit: int, window_seconds: int) -> None:
    allowed = await check_rate_limit(runtime, key, limit, window_seconds)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key, limit=limit, window_seconds=window_seconds)
        raise _http_error("rate_limited", "rate limit exceeded", status_code=429)


async def get_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    runtime = get_runtime()
    ctx = await runtime.auth.authenticate(authorization)
    if not ctx:
        raise _http_error("unauthorized", "invalid session", status_code=401)
    return ctx


def _auth_response(issued: IssuedTokens) -> AuthResponse:
    return AuthResponse(
        user_id=issued.user.id,
        session_id=issued.session.id,
        session_expires_at=issued.session.expires_at,
        access_token=issued.access_token,
        token_type=issued.token_type,
    )


# auth
@router.post("/auth/signup", response_model=Envelope, status_code=201, tags=["auth"])
async def signup(body: SignupRequest):
    runtime = get_runtime()
    issued = await runtime.auth.signup(body.email, body.password)
    return Envelope(status="ok", data=_auth_response(issued))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest):
    runtime = get_runtime()
    issued = await runtime.auth.login(body.email, body.password)
    return Envelope(status="ok", data=_auth_response(issued))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    if principal.session_id:
        await runtime.auth.logout(principal.session_id)
    return Envelope(status="ok", data={"message": "session revoked"})


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.store.get_user(principal.user_id)
    if not user:
        raise _http_error("not_found", "user not found", status_code=404)
    return Envelope(status="ok", data=UserResponse.model_validate(user))


# models
@router.get("/models", response_model=Envelope, tags=["models"])
async def list_models():
    models = [ModelResponse(**info.to_dict()) for info in model_registry.list_models()]
    return Envelope(
        status="ok",
        data=ModelListResponse(models=models, default_model=model_registry.default_model_id()),
    )


# projects
@router.post("/projects", response_model=Envelope, status_code=201, tags=["projects"])
async def create_project(body: ProjectCreateRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    project = runtime.projects.create(
        principal.user_id,
        body.name,
        system_prompt=body.system_prompt,
        model=body.model,
        params=body.params,
    )
    return Envelope(status="ok", data=ProjectResponse.model_validate(project))


@router.get("/projects", response_model=Envelope, tags=["projects"])
async def list_projects(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    items = [ProjectResponse.model_validate(p) for p in runtime.projects.list(principal.user_id)]
    return Envelope(status="ok", data={"items": items})


@router.get("/projects/{project_id}", response_model=Envelope, tags=["projects"])
async def get_project(project_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    project = runtime.projects.get(principal.user_id, project_id)
    return Envelope(status="ok", data=ProjectResponse.model_validate(project))


@router.patch("/projects/{project_id}", response_model=Envelope, tags=["projects"])
async def update_project(
    project_id: str, body: ProjectUpdateRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    changes = {name: getattr(body, name) for name in body.model_fields_set}
    project = runtime.projects.update(principal.user_id, project_id, changes)
    return Envelope(status="ok", data=ProjectResponse.model_validate(project))


@router.delete("/projects/{project_id}", response_model=Envelope, tags=["projects"])
async def delete_project(project_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    runtime.projects.delete(principal.user_id, project_id)
    return Envelope(status="ok", data={"deleted": True, "project_id": project_id})


# chats
@router.post(
    "/projects/{project_id}/chats", response_model=Envelope, status_code=201, tags=["chats"]
)
async def create_chat(
    project_id: str,
    body: Optional[ChatCreateRequest] = None,
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    chat = runtime.chats.create_chat(
        principal.user_id, project_id, title=body.title if body else None
    )
    return Envelope(status="ok", data=ChatResponse.model_validate(chat))


@router.get("/projects/{project_id}/chats", response_model=Envelope, tags=["chats"])
async def list_chats(project_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    items = [
        ChatResponse.model_validate(c)
        for c in runtime.chats.list_chats(principal.user_id, project_id)
    ]
    return Envelope(status="ok", data={"items": items})


@router.get("/chats/{chat_id}", response_model=Envelope, tags=["chats"])
async def get_chat(chat_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    chat = runtime.chats.get_chat(principal.user_id, chat_id)
    return Envelope(status="ok", data=ChatResponse.model_validate(chat))


@router.patch("/chats/{chat_id}", response_model=Envelope, tags=["chats"])
async def update_chat(
    chat_id: str, body: ChatUpdateRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    chat = runtime.chats.update_chat(principal.user_id, chat_id, body.title)
    return Envelope(status="ok", data=ChatResponse.model_validate(chat))


@router.delete("/chats/{chat_id}", response_model=Envelope, tags=["chats"])
async def delete_chat(chat_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    runtime.chats.delete_chat(principal.user_id, chat_id)
    return Envelope(status="ok", data={"deleted": True, "chat_id": chat_id})


@router.get("/chats/{chat_id}/messages", response_model=Envelope, tags=["chats"])
async def list_messages(chat_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    items = [
        MessageResponse.model_validate(m)
        for m in runtime.chats.list_messages(principal.user_id, chat_id)
    ]
    return Envelope(status="ok", data={"items": items})


@router.post(
    "/chats/{chat_id}/messages", response_model=Envelope, status_code=201, tags=["chats"]
)
async def create_message(
    chat_id: str, body: MessageCreateRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    message = runtime.chats.create_user_message(principal.user_id, chat_id, body.content)
    return Envelope(status="ok", data=MessageResponse.model_validate(message))


@router.get("/chats/{chat_id}/context", response_model=Envelope, tags=["chats"])
async def preview_context(
    chat_id: str,
    prompt: str = Query("", max_length=65536),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    block = await runtime.chats.preview_context(principal.user_id, chat_id, prompt)
    return Envelope(status="ok", data=ContextPreviewResponse(context=block))


@router.get("/chats/{chat_id}/stream", tags=["chats"])
async def stream_chat(
    chat_id: str,
    content: str = Query("", max_length=65536),
    x_openrouter_key: Optional[str] = Header(None, alias="X-OpenRouter-Key"),
    principal: AuthContext = Depends(get_user),
):
    """Stream an assistant reply as server-sent events.

    Setup failures (ownership, model, credential, concurrent stream) are
    returned as ordinary error envelopes; once the first event is produced
    the response switches to ``text/event-stream``.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"stream:{principal.user_id}",
        runtime.settings.stream_rate_limit_per_minute,
        runtime.settings.stream_rate_limit_window_seconds,
    )
    events = runtime.chats.stream_reply(
        principal.user_id, chat_id, content, credential=x_openrouter_key
    )
    try:
        first = await events.__anext__()
    except StopAsyncIteration:
        first = None

    async def body() -> AsyncIterator[str]:
        try:
            if first is None:
                return
            yield first.to_sse()
            if first.terminal:
                return
            async for event in events:
                yield event.to_sse()
        finally:
            await events.aclose()

    return StreamingResponse(body(), media_type="text/event-stream", headers=_SSE_HEADERS)


# files
@router.get("/files", response_model=Envelope, tags=["files"])
async def list_files(
    project_id: str = Query(..., max_length=255),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    items = [
        FileRecordResponse.model_validate(f)
        for f in runtime.files.list(principal.user_id, project_id)
    ]
    return Envelope(status="ok", data={"items": items})


@router.post("/files", response_model=Envelope, status_code=201, tags=["files"])
async def upload_file(
    project_id: str = Query(..., max_length=255),
    file: UploadFile = File(...),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    data = await file.read(runtime.settings.max_upload_bytes + 1)
    record = runtime.files.upload(
        principal.user_id,
        project_id,
        filename=file.filename,
        mime=file.content_type,
        data=data,
    )
    return Envelope(status="ok", data=FileRecordResponse.model_validate(record))


@router.delete("/files/{file_id}", response_model=Envelope, tags=["files"])
async def delete_file(file_id: str, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    runtime.files.delete(principal.user_id, file_id)
    return Envelope(status="ok", data={"deleted": True, "file_id": file_id})


__all__ = ["router", "get_user"]
