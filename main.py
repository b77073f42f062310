import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field

from cache import TimedCache
from config import Settings
from database import DocumentStore, MongoDocumentStore
from errors import (
    CapacityError,
    DocumentNotFoundError,
    InvalidTransitionError,
    MembershipError,
    PreconditionFailedError,
    StoreError,
)
from invitations import InvitationService
from notifications import (
    EmailRenderer,
    EmailSender,
    LoggingEmailSender,
    NotificationDispatcher,
    NotificationOutbox,
    SmtpEmailSender,
)
from projects import MEMBER, ProjectService, can_edit_tasks, is_member, is_owner
from reconcile import Reconciler, accept_invitation
from schemas import (
    Identity,
    InvitationCreate,
    InviteRole,
    Priority,
    Project,
    ProjectCreate,
    ProjectUpdate,
    Role,
    Task,
    TaskCreate,
    TaskStatus,
    TaskUpdate,
    User,
    Visibility,
)
from tasks import TaskService
from users import UserDirectory

logger = logging.getLogger(__name__)

router = APIRouter()


# -----------------------------
# Wiring
# -----------------------------

@dataclass
class Services:
    store: DocumentStore
    users: UserDirectory
    projects: ProjectService
    tasks: TaskService
    invitations: InvitationService
    outbox: NotificationOutbox
    dispatcher: NotificationDispatcher
    reconciler: Reconciler

    @classmethod
    def build(
        cls,
        store: DocumentStore,
        settings: Optional[Settings] = None,
        sender: Optional[EmailSender] = None,
        **dispatcher_options: Any,
    ) -> "Services":
        settings = settings or Settings()
        users = UserDirectory(store, TimedCache(ttl_seconds=settings.user_cache_ttl_seconds))
        outbox = NotificationOutbox(store)
        projects = ProjectService(store)
        invitations = InvitationService(store, outbox)
        dispatcher = NotificationDispatcher(
            store,
            users,
            sender or LoggingEmailSender(),
            EmailRenderer(settings.app_base_url),
            max_attempts=settings.outbox_max_attempts,
            batch_size=settings.outbox_batch_size,
            **dispatcher_options,
        )
        return cls(
            store=store,
            users=users,
            projects=projects,
            tasks=TaskService(store, outbox),
            invitations=invitations,
            outbox=outbox,
            dispatcher=dispatcher,
            reconciler=Reconciler(invitations, projects),
        )


def _sender_from_settings(settings: Settings) -> EmailSender:
    if not settings.smtp_host:
        return LoggingEmailSender()
    return SmtpEmailSender(
        settings.smtp_host,
        settings.smtp_port,
        settings.smtp_user,
        settings.smtp_password,
        sender=settings.email_from,
        starttls=settings.smtp_starttls,
    )


def create_app(services: Optional[Services] = None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or Settings.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        jobs: List[asyncio.Task] = []
        owned = app.state.services is None
        if owned:
            store = MongoDocumentStore(settings.database_url, settings.database_name)
            app.state.services = Services.build(store, settings, _sender_from_settings(settings))
            try:
                await store.ensure_indexes()
            except Exception as exc:
                logger.warning("Index setup failed, queries will fall back to scans: %s", exc)
            svc = app.state.services
            jobs.append(asyncio.create_task(svc.dispatcher.run_forever(settings.outbox_interval_seconds)))
            jobs.append(asyncio.create_task(svc.reconciler.run_forever(settings.reconcile_interval_seconds)))
        try:
            yield
        finally:
            for job in jobs:
                job.cancel()
            if jobs:
                await asyncio.gather(*jobs, return_exceptions=True)
            if owned:
                await app.state.services.store.close()

    app = FastAPI(title="Synchro Project Management API", lifespan=lifespan)
    app.state.services = services
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _install_error_handlers(app)
    app.include_router(router)
    return app


# -----------------------------
# Error mapping
# -----------------------------

RETRY_MESSAGE = "The data store is unavailable right now. Please try again."


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(CapacityError)
    async def capacity_error(request: Request, exc: CapacityError):
        return JSONResponse(status_code=409, content={"detail": str(exc), "code": "capacity"})

    @app.exception_handler(DocumentNotFoundError)
    async def not_found_error(request: Request, exc: DocumentNotFoundError):
        return JSONResponse(status_code=404, content={"detail": "Not found", "code": exc.code})

    @app.exception_handler(InvalidTransitionError)
    async def transition_error(request: Request, exc: InvalidTransitionError):
        return JSONResponse(status_code=409, content={"detail": str(exc), "code": "invalid_transition"})

    @app.exception_handler(PreconditionFailedError)
    async def precondition_error(request: Request, exc: PreconditionFailedError):
        return JSONResponse(
            status_code=409,
            content={"detail": "The record changed while you were editing it. Reload and retry.", "code": exc.code},
        )

    @app.exception_handler(MembershipError)
    async def membership_error(request: Request, exc: MembershipError):
        return JSONResponse(status_code=409, content={"detail": str(exc), "code": "membership"})

    @app.exception_handler(ValueError)
    async def value_error(request: Request, exc: ValueError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(StoreError)
    async def store_error(request: Request, exc: StoreError):
        logger.warning("Store failure on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=503, content={"detail": RETRY_MESSAGE, "code": exc.code})


# -----------------------------
# Request bodies
# -----------------------------

class ProjectBody(BaseModel):
    project_name: str = Field(alias="projectName", min_length=1)
    goal: str = ""
    deadline: Optional[datetime] = None
    visibility: Visibility = "private"


class AddMemberRequest(BaseModel):
    email: EmailStr
    role: InviteRole = MEMBER


class RoleRequest(BaseModel):
    role: Role


class InviteRequest(BaseModel):
    email: EmailStr
    role: InviteRole = MEMBER


class TaskBody(BaseModel):
    model_config = {"populate_by_name": True}

    title: str = Field(min_length=1)
    description: str = ""
    status: TaskStatus = "To Do"
    assigned_to: Optional[str] = Field(default=None, alias="assignedTo")
    assigned_to_users: Optional[List[str]] = Field(default=None, alias="assignedToUsers")
    due_date: Optional[datetime] = Field(default=None, alias="dueDate")
    priority: Optional[Priority] = None
    category: Optional[str] = None
    estimated_hours: Optional[float] = Field(default=None, alias="estimatedHours", ge=0)


# -----------------------------
# Dependencies
# -----------------------------

def get_services(request: Request) -> Services:
    services = request.app.state.services
    if services is None:
        raise HTTPException(status_code=503, detail="Service is starting")
    return services


async def get_current_user(
    services: Services = Depends(get_services),
    x_user_id: Optional[str] = Header(default=None),
    x_user_email: Optional[str] = Header(default=None),
    x_user_name: Optional[str] = Header(default=None),
    x_user_photo: Optional[str] = Header(default=None),
) -> User:
    # identity is asserted by the authentication gateway in front of us
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity")
    identity = Identity(uid=x_user_id, email=x_user_email, display_name=x_user_name, photo_url=x_user_photo)
    return await services.users.ensure(identity)


async def _project_for(services: Services, project_id: str, user: User) -> Project:
    project = await services.projects.get(project_id)
    if not project or not (is_member(project, user.uid) or project.visibility == "public"):
        raise HTTPException(status_code=404, detail="Project not found or access denied")
    return project


async def _owned_project(services: Services, project_id: str, user: User) -> Project:
    project = await _project_for(services, project_id, user)
    if not is_owner(project, user.uid):
        raise HTTPException(status_code=403, detail="Only the project owner can do this")
    return project


async def _task_for(services: Services, task_id: str, user: User) -> Tuple[Task, Project]:
    task = await services.tasks.get(task_id)
    if not task:
        raise HTTPException(status_code=404, detail="Task not found")
    project = await services.projects.get(task.project_id)
    if not project or not is_member(project, user.uid):
        raise HTTPException(status_code=403, detail="Access denied")
    return task, project




# -----------------------------
# Users
# -----------------------------

@router.get("/me")
async def me(user: User = Depends(get_current_user)):
    return user


@router.post("/auth/sign-out")
async def sign_out(services: Services = Depends(get_services), user: User = Depends(get_current_user)):
    services.users.sign_out()
    return {"ok": True}


@router.get("/users/search")
async def search_users(
    q: str,
    limit: int = 10,
    services: Services = Depends(get_services),
    user: User = Depends(get_current_user),
):
    return await services.users.search(q, min(max(limit, 0), 50))


@router.get("/users/lookup")
async def lookup_user(email: str, services: Services = Depends(get_services), user: User = Depends(get_current_user)):
    found = await services.users.find_by_email(email)
    if not found:
        raise HTTPException(status_code=404, detail="No user with that email. Ask them to sign up first.")
    return found


@router.get("/users/cache-stats")
async def user_cache_stats(services: Services = Depends(get_services), user: User = Depends(get_current_user)):
    return services.users.cache_stats()


# -----------------------------
# Projects
# -----------------------------

@router.post("/projects")
async def create_project(
    body: ProjectBody,
    services: Services = Depends(get_services),
    user: User = Depends(get_current_user),
):
    project_id = await services.projects.create(
        ProjectCreate(
            project_name=body.project_name,
            goal=body.goal,
            deadline=body.deadline,
            visibility=body.visibility,
            created_by=user.uid,
            created_by_email=user.email or None,
        )
    )
    return await services.projects.get(project_id)


@router.get("/projects")
async def list_projects(services: Services = Depends(get_services), user: User = Depends(get_current_user)):
    return await services.projects.list_for_user(user.uid)


@router.get("/projects/{project_id}")
async def get_project(project_id: str, services: Services = Depends(get_services), user: User = Depends(get_current_user)):
    return await _project_for(services, project_id, user)


@router.patch("/projects/{project_id}")
async def update_project(
    project_id: str,
    body: ProjectUpdate,
    services: Services = Depends(get_services),
    user: User = Depends(get_current_user),
):
    await _owned_project(services, project_id, user)
    await services.projects.update(project_id, body)
    return await services.projects.get(project_id)


@router.delete("/projects/{project_id}")
async def delete_project(project_id: str, services: Services = Depends(get_services), user: User = Depends(get_current_user)):
    await _owned_project(services, project_id, user)
    await services.projects.delete(project_id)
    return {"deleted": project_id}


@router.post("/projects/{project_id}/members")
async def add_member(
    project_id: str,
    body: AddMemberRequest,
    services: Services = Depends(get_services),
    user: User = Depends(get_current_user),
):
    await _owned_project(services, project_id, user)
    member = await services.users.find_by_email(body.email)
    if not member:
        raise HTTPException(status_code=404, detail="No user with that email. Ask them to sign up first.")
    await services.projects.add_member(project_id, member.uid, member.email, body.role)
    return await services.projects.get(project_id)


@router.patch("/projects/{project_id}/members/{member_id}")
async def update_member_role(
    project_id: str,
    member_id: str,
    body: RoleRequest,
    services: Services = Depends(get_services),
    user: User = Depends(get_current_user),
):
    await _owned_project(services, project_id, user)
    await services.projects.update_member_role(project_id, member_id, body.role)
    return await services.projects.get(project_id)


@router.delete("/projects/{project_id}/members/{member_id}")
async def remove_member(
    project_id: str,
    member_id: str,
    services: Services = Depends(get_services),
    user: User = Depends(get_current_user),
):
    await _owned_project(services, project_id, user)
    await services.projects.remove_member(project_id, member_id)
    return await services.projects.get(project_id)


# -----------------------------
# Invitations
# -----------------------------

@router.post("/projects/{project_id}/invitations")
async def invite(
    project_id: str,
    body: InviteRequest,
    services: Services = Depends(get_services),
    user: User = Depends(get_current_user),
):
    project = await _owned_project(services, project_id, user)
    if not user.email:
        raise HTTPException(status_code=400, detail="Your account has no email address to invite from")
    invitee = await services.users.find_by_email(body.email)
    if not invitee:
        raise HTTPException(status_code=404, detail="No user with that email. Ask them to sign up first.")
    if is_member(project, invitee.uid):
        raise HTTPException(status_code=400, detail="User is already a member of this project")
    invitation_id = await services.invitations.create(
        InvitationCreate(
            project_id=project.id,
            project_name=project.project_name,
            invited_by=user.uid,
            invited_by_email=user.email,
            invited_to=invitee.uid,
            invited_to_email=invitee.email,
            role=body.role,
        )
    )
    return await services.invitations.get(invitation_id)


@router.get("/projects/{project_id}/invitations")
async def project_invitations(
    project_id: str,
    services: Services = Depends(get_services),
    user: User = Depends(get_current_user),
):
    await _owned_project(services, project_id, user)
    return await services.invitations.list_pending_for_project(project_id)


@router.get("/invitations")
async def my_invitations(services: Services = Depends(get_services), user: User = Depends(get_current_user)):
    return await services.invitations.list_pending_for_user(user.uid)


@router.post("/invitations/{invitation_id}/accept")
async def accept(invitation_id: str, services: Services = Depends(get_services), user: User = Depends(get_current_user)):
    invitation = await accept_invitation(services.invitations, services.projects, invitation_id, user)
    if invitation is None:
        raise HTTPException(status_code=404, detail="Invitation not found")
    return invitation


@router.post("/invitations/{invitation_id}/decline")
async def decline(invitation_id: str, services: Services = Depends(get_services), user: User = Depends(get_current_user)):
    invitation = await services.invitations.get(invitation_id)
    if not invitation or invitation.invited_to != user.uid:
        raise HTTPException(status_code=404, detail="Invitation not found")
    await services.invitations.decline(invitation_id)
    return await services.invitations.get(invitation_id)


@router.delete("/invitations/{invitation_id}")
async def delete_invitation(
    invitation_id: str,
    services: Services = Depends(get_services),
    user: User = Depends(get_current_user),
):
    invitation = await services.invitations.get(invitation_id)
    if not invitation:
        raise HTTPException(status_code=404, detail="Invitation not found")
    if invitation.invited_by != user.uid and invitation.invited_to != user.uid:
        raise HTTPException(status_code=403, detail="Access denied")
    await services.invitations.delete(invitation_id)
    return {"deleted": invitation_id}


# -----------------------------
# Tasks
# -----------------------------

@router.post("/projects/{project_id}/tasks")
async def create_task(
    project_id: str,
    body: TaskBody,
    services: Services = Depends(get_services),
    user: User = Depends(get_current_user),
):
    project = await _project_for(services, project_id, user)
    if not can_edit_tasks(project, user.uid):
        raise HTTPException(status_code=403, detail="Viewers cannot create tasks")
    assignees = list(body.assigned_to_users or []) + ([body.assigned_to] if body.assigned_to else [])
    outsiders = [uid for uid in assignees if not is_member(project, uid)]
    if outsiders:
        raise HTTPException(status_code=400, detail=f"Not project members: {', '.join(outsiders)}")
    task_id = await services.tasks.create(
        TaskCreate(project_id=project_id, created_by=user.uid, **body.model_dump())
    )
    return await services.tasks.get(task_id)


@router.get("/projects/{project_id}/tasks")
async def list_tasks(project_id: str, services: Services = Depends(get_services), user: User = Depends(get_current_user)):
    await _project_for(services, project_id, user)
    return await services.tasks.list_for_project(project_id)


@router.get("/tasks")
async def my_tasks(services: Services = Depends(get_services), user: User = Depends(get_current_user)):
    return await services.tasks.list_for_user(user.uid)


@router.get("/tasks/{task_id}")
async def get_task(task_id: str, services: Services = Depends(get_services), user: User = Depends(get_current_user)):
    task, _ = await _task_for(services, task_id, user)
    return task


@router.patch("/tasks/{task_id}")
async def update_task(
    task_id: str,
    body: TaskUpdate,
    services: Services = Depends(get_services),
    user: User = Depends(get_current_user),
):
    task, project = await _task_for(services, task_id, user)
    if not is_owner(project, user.uid):
        if user.uid not in task.assignees:
            raise HTTPException(status_code=403, detail="Only assignees or the owner can update this task")
        if set(body.model_fields_set) - {"status"}:
            raise HTTPException(status_code=403, detail="Assignees can only change the status")
    await services.tasks.update(task_id, body, actor_id=user.uid)
    return await services.tasks.get(task_id)


@router.delete("/tasks/{task_id}")
async def delete_task(task_id: str, services: Services = Depends(get_services), user: User = Depends(get_current_user)):
    _, project = await _task_for(services, task_id, user)
    if not is_owner(project, user.uid):
        raise HTTPException(status_code=403, detail="Only the project owner can delete tasks")
    await services.tasks.delete(task_id)
    return {"deleted": task_id}


# -----------------------------
# Maintenance
# -----------------------------

@router.post("/admin/reconcile")
async def reconcile(services: Services = Depends(get_services), user: User = Depends(get_current_user)):
    report = await services.reconciler.sweep()
    return report.as_dict()


@router.post("/admin/outbox/dispatch")
async def dispatch_outbox(services: Services = Depends(get_services), user: User = Depends(get_current_user)):
    return await services.dispatcher.dispatch_pending()


@router.get("/admin/indexes")
async def index_status(services: Services = Depends(get_services), user: User = Depends(get_current_user)):
    return await services.store.index_status()


# -----------------------------
# Health/Test
# -----------------------------

@router.get("/")
def read_root():
    return {"message": "Project Management API running"}


@router.get("/test")
async def test_database(services: Services = Depends(get_services)) -> Dict[str, Any]:
    response: Dict[str, Any] = {
        "backend": "running",
        "database": "unavailable",
        "collections": [],
    }
    try:
        collections = await services.store.ping()
        response["database"] = "connected"
        response["collections"] = collections[:10]
    except StoreError as exc:
        response["database"] = f"error: {str(exc)[:50]}"
    return response


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = Settings.from_env()
    logging.basicConfig(
        level=_settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(app, host="0.0.0.0", port=_settings.port)
