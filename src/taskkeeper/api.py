from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
import logging

from fastapi import Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from taskkeeper.auth import AuthService, Principal, UserView
from taskkeeper.config import load_settings
from taskkeeper.errors import AuthenticationError, InputValidationError
from taskkeeper.repository import InMemoryTaskRepository, InMemoryUserRepository
from taskkeeper.service import TaskService, TaskView
from taskkeeper.worker import AutoCompleteWorker

_log = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


class RegisterRequest(BaseModel):
    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)
    role: str | None = Field(default=None, max_length=32)


class LoginRequest(BaseModel):
    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class CreateTaskRequest(BaseModel):
    title: str = Field(min_length=1, max_length=255)
    description: str = Field(default='', max_length=10000)


class UpdateTaskRequest(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=10000)
    status: str | None = Field(default=None, max_length=32)


class UserResponse(BaseModel):
    user_id: str
    email: str
    role: str
    created_at: str
    updated_at: str


class LoginResponse(BaseModel):
    token: str
    user: UserResponse


class TaskResponse(BaseModel):
    task_id: str
    user_id: str
    title: str
    description: str
    status: str
    created_at: str
    updated_at: str


class HealthResponse(BaseModel):
    status: str
    time: str
    worker_running: bool


class AppState:
    def __init__(
        self,
        *,
        task_service: TaskService,
        auth_service: AuthService,
        worker: AutoCompleteWorker | None,
    ):
        self.task_service = task_service
        self.auth_service = auth_service
        self.worker = worker


def _to_task_response(task: TaskView) -> TaskResponse:
    return TaskResponse(
        task_id=task.task_id,
        user_id=task.user_id,
        title=task.title,
        description=task.description,
        status=task.status.value,
        created_at=task.created_at,
        updated_at=task.updated_at,
    )


def _to_user_response(user: UserView) -> UserResponse:
    return UserResponse(
        user_id=user.user_id,
        email=user.email,
        role=user.role.value,
        created_at=user.created_at,
        updated_at=user.updated_at,
    )


def create_app(
    *,
    task_service: TaskService | None = None,
    auth_service: AuthService | None = None,
    worker: AutoCompleteWorker | None = None,
    shutdown_timeout_seconds: float = 10.0,
) -> FastAPI:
    if auth_service is None:
        settings = load_settings()
        auth_service = AuthService(
            users=InMemoryUserRepository(),
            jwt_secret=settings.jwt_secret,
            token_ttl=timedelta(hours=settings.jwt_expiry_hours),
        )
    if task_service is None:
        task_service = TaskService(repository=InMemoryTaskRepository(), scheduler=worker)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        container: AppState = app.state.container
        if container.worker is None:
            _log.info('api started without auto-complete worker')
        else:
            container.worker.start()
        try:
            yield
        finally:
            if container.worker is not None and not container.worker.stop(timeout=shutdown_timeout_seconds):
                _log.warning('api shutdown left worker threads running timeout=%s', shutdown_timeout_seconds)

    app = FastAPI(title='taskkeeper api', version='0.1.0', lifespan=lifespan)
    app.state.container = AppState(task_service=task_service, auth_service=auth_service, worker=worker)

    def _field_from_loc(loc: tuple | list | None) -> str | None:
        if not loc:
            return None
        source_prefixes = {'body', 'query', 'path', 'header', 'cookie'}
        parts = [str(p) for p in loc]
        if parts and parts[0] in source_prefixes:
            parts = parts[1:]
        return '.'.join(parts) or None

    def _error_payload(*, message: str, field: str | None = None, code: str = 'validation_error') -> dict:
        payload: dict[str, str] = {
            'code': code,
            'message': message,
        }
        if field:
            payload['field'] = field
        return payload

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation_error(request: Request, exc: RequestValidationError):  # noqa: ARG001
        details = exc.errors()
        if details:
            first = details[0]
            message = str(first.get('msg') or 'invalid request body')
            field = _field_from_loc(first.get('loc'))
        else:
            message = 'invalid request body'
            field = None
        return JSONResponse(status_code=400, content=_error_payload(message=message, field=field))

    @app.exception_handler(InputValidationError)
    async def handle_input_validation_error(request: Request, exc: InputValidationError):  # noqa: ARG001
        return JSONResponse(
            status_code=400,
            content=_error_payload(message=str(exc), field=exc.field, code=exc.code),
        )

    @app.exception_handler(AuthenticationError)
    async def handle_authentication_error(request: Request, exc: AuthenticationError):  # noqa: ARG001
        return JSONResponse(
            status_code=401,
            content=_error_payload(message=exc.message, code='unauthorized'),
            headers={'WWW-Authenticate': 'Bearer'},
        )

    def get_task_service() -> TaskService:
        return app.state.container.task_service

    def get_auth_service() -> AuthService:
        return app.state.container.auth_service

    def get_principal(
        credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
        auth: AuthService = Depends(get_auth_service),
    ) -> Principal:
        if credentials is None or str(credentials.scheme or '').lower() != 'bearer':
            raise AuthenticationError('missing authorization header')
        return auth.validate_token(credentials.credentials)

    @app.get('/healthz', response_model=HealthResponse)
    def healthz() -> HealthResponse:
        current = app.state.container.worker
        return HealthResponse(
            status='ok',
            time=datetime.now(timezone.utc).isoformat(),
            worker_running=bool(current is not None and current.running),
        )

    @app.post('/auth/register', response_model=UserResponse, status_code=201)
    def register(payload: RegisterRequest, auth: AuthService = Depends(get_auth_service)) -> UserResponse:
        user = auth.register(email=payload.email, password=payload.password, role=payload.role)
        return _to_user_response(user)

    @app.post('/auth/login', response_model=LoginResponse)
    def login(payload: LoginRequest, auth: AuthService = Depends(get_auth_service)) -> LoginResponse:
        result = auth.login(email=payload.email, password=payload.password)
        return LoginResponse(token=result.token, user=_to_user_response(result.user))

    @app.post('/tasks', response_model=TaskResponse, status_code=201)
    def create_task(
        payload: CreateTaskRequest,
        principal: Principal = Depends(get_principal),
        service: TaskService = Depends(get_task_service),
    ) -> TaskResponse:
        task = service.create_task(principal, title=payload.title, description=payload.description)
        return _to_task_response(task)

    @app.get('/tasks', response_model=list[TaskResponse])
    def list_tasks(
        principal: Principal = Depends(get_principal),
        service: TaskService = Depends(get_task_service),
        status: str | None = Query(default=None, max_length=32),
        limit: int = Query(default=50, ge=1, le=500),
        offset: int = Query(default=0, ge=0),
    ) -> list[TaskResponse]:
        rows = service.list_tasks(principal, status=status, limit=limit, offset=offset)
        return [_to_task_response(r) for r in rows]

    @app.get('/tasks/{task_id}', response_model=TaskResponse)
    def get_task(
        task_id: str,
        principal: Principal = Depends(get_principal),
        service: TaskService = Depends(get_task_service),
    ) -> TaskResponse:
        try:
            task = service.get_task(principal, task_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc
        except PermissionError as exc:
            raise HTTPException(status_code=403, detail='unauthorized access') from exc
        return _to_task_response(task)

    @app.put('/tasks/{task_id}', response_model=TaskResponse)
    def update_task(
        task_id: str,
        payload: UpdateTaskRequest,
        principal: Principal = Depends(get_principal),
        service: TaskService = Depends(get_task_service),
    ) -> TaskResponse:
        try:
            task = service.update_task(
                principal,
                task_id,
                title=payload.title,
                description=payload.description,
                status=payload.status,
            )
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc
        except PermissionError as exc:
            raise HTTPException(status_code=403, detail='unauthorized access') from exc
        return _to_task_response(task)

    @app.delete('/tasks/{task_id}', status_code=204)
    def delete_task(
        task_id: str,
        principal: Principal = Depends(get_principal),
        service: TaskService = Depends(get_task_service),
    ) -> Response:
        try:
            service.delete_task(principal, task_id)
        except KeyError as exc:
            raise HTTPException(status_code=404, detail='task not found') from exc
        except PermissionError as exc:
            raise HTTPException(status_code=403, detail='unauthorized access') from exc
        return Response(status_code=204)

    return app
