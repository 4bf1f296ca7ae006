"""FastAPI application for topickeys."""

import logging
import time
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import FastAPI, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field

from . import db, jobs
from ._version import __version__
from .config import ServerSettings
from .errors import MalformedIdentity
from .identity import decode
from .metrics import metrics
from .status import CapabilityFlags, can_enable, encryption_status

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize and cleanup database, and schedule the consistency job."""
    db.init_db()
    jobs.schedule_consistency_job()

    yield

    jobs.stop_consistency_job()
    db.close_db()


app = FastAPI(
    title="topickeys",
    description="Key distribution for end-to-end encrypted topics",
    version=__version__,
    lifespan=lifespan,
)


# --- Request Timing Middleware ---


@app.middleware("http")
async def add_timing_middleware(request: Request, call_next):
    """Middleware to track request timing for metrics."""
    start_time = time.perf_counter()

    response = await call_next(request)

    duration_ms = (time.perf_counter() - start_time) * 1000

    # Normalize IDs out of the path for aggregation
    path = request.url.path
    parts = path.split("/")
    if path.startswith("/t/"):
        # /t/{topic_id}/{action} -> topics/{action}
        action = parts[3] if len(parts) > 3 else "update"
        endpoint = f"topics/{action}"
    elif path == "/t":
        endpoint = "topics/create"
    elif path.startswith("/encrypt/"):
        endpoint = f"encrypt/{parts[2]}"
    elif path.startswith("/admin"):
        endpoint = "admin"
    elif path in ("/health", "/metrics"):
        endpoint = path[1:]
    else:
        endpoint = "other"

    metrics.record_request(endpoint, duration_ms)
    response.headers["X-Response-Time-Ms"] = f"{duration_ms:.1f}"

    return response


# --- Request/Response Models ---


class CreateUserRequest(BaseModel):
    username: str
    groups: list[str] = Field(default_factory=list)


class UserInfo(BaseModel):
    id: int
    username: str
    groups: list[str]


class SubmitKeysRequest(BaseModel):
    public: str
    # A bare string is stored under the "passphrase" label
    private: str | dict[str, str]
    overwrite: bool = False


class CreateTopicRequest(BaseModel):
    title: str
    encrypted_title: str | None = None
    key: str | None = None


class TopicInfo(BaseModel):
    id: int
    title: str
    encrypted_title: str | None = None
    created_by: int | None = None


class TopicKeyInfo(BaseModel):
    topic_id: int
    topic_key: str
    encrypted_title: str | None = None


class InviteRequest(BaseModel):
    user: str
    key: str | None = None


class UpdateTopicRequest(BaseModel):
    encrypted_title: str


class CapabilitiesResponse(BaseModel):
    encrypt_enabled: bool
    encrypt_public: str | None = None
    encrypt_private: dict[str, str] | None = None
    allowed_groups: list[str]
    user_groups: list[str]
    can_enable: bool


# --- Auth Helpers ---


def require_admin(x_admin_token: str | None) -> None:
    """Verify the X-Admin-Token header against TOPICKEYS_ADMIN_TOKEN."""
    admin_token = ServerSettings.from_env().admin_token
    if not admin_token:
        raise HTTPException(500, "No admin token configured. Set TOPICKEYS_ADMIN_TOKEN")
    if not x_admin_token:
        raise HTTPException(401, "X-Admin-Token header required")
    if x_admin_token != admin_token:
        raise HTTPException(403, "Invalid admin token")


def require_user(api_username: str | None) -> dict:
    """Resolve the acting user from the Api-Username header."""
    if not api_username:
        raise HTTPException(401, "Api-Username header required")
    user = db.get_user_by_username(api_username)
    if user is None:
        raise HTTPException(401, "Unknown user")
    return user


def require_topic(topic_id: int) -> dict:
    topic = db.get_topic(topic_id)
    if topic is None:
        raise HTTPException(404, "Topic not found")
    return topic


def require_participant(topic_id: int, user: dict) -> dict:
    """Verify the acting user may manage the topic."""
    topic = require_topic(topic_id)
    if not db.is_participant(topic_id, user["id"]):
        raise HTTPException(403, "Not a participant of this topic")
    return topic


def _capabilities(user: dict, settings: ServerSettings) -> CapabilityFlags:
    keys = db.get_user_keys(user["id"])
    return CapabilityFlags(
        encrypt_enabled=settings.encrypt_enabled,
        encrypt_public=keys["public"] if keys else None,
        encrypt_private=keys["private"] if keys else None,
        allowed_groups=settings.encrypt_groups,
        user_groups=tuple(user["groups"]),
    )


def _may_enable(flags: CapabilityFlags) -> bool:
    # The server cannot see local identities; having keys stored is enough
    status = encryption_status(flags, identity_present=flags.has_server_keys)
    return can_enable(status, flags.encrypt_enabled, flags.allowed_groups, flags.user_groups)


# --- Admin Endpoints ---


@app.post("/admin/users", response_model=UserInfo)
def create_user(
    request: CreateUserRequest,
    x_admin_token: Annotated[str | None, Header()] = None,
):
    """Create a forum user."""
    require_admin(x_admin_token)
    try:
        user = db.create_user(request.username, request.groups)
    except ValueError as e:
        raise HTTPException(409, str(e)) from e
    return UserInfo(id=user["id"], username=user["username"], groups=user["groups"])


@app.post("/admin/jobs/encrypt-consistency")
def run_encrypt_consistency(
    workers: int = 1,
    x_admin_token: Annotated[str | None, Header()] = None,
):
    """Run the encrypt consistency job now."""
    require_admin(x_admin_token)
    jobs.encrypt_consistency(workers=max(1, workers))
    return {"status": "ok"}


# --- Encrypt Endpoints ---


@app.get("/encrypt/capabilities", response_model=CapabilitiesResponse)
def get_capabilities(api_username: Annotated[str | None, Header()] = None):
    """Capability flags for the acting user."""
    user = require_user(api_username)
    flags = _capabilities(user, ServerSettings.from_env())
    return CapabilitiesResponse(
        encrypt_enabled=flags.encrypt_enabled,
        encrypt_public=flags.encrypt_public,
        encrypt_private=flags.encrypt_private,
        allowed_groups=list(flags.allowed_groups),
        user_groups=list(flags.user_groups),
        can_enable=_may_enable(flags),
    )


@app.get("/encrypt/user")
def get_user_identities(
    usernames: Annotated[str, Query(description="Comma separated usernames")],
    api_username: Annotated[str | None, Header()] = None,
) -> dict[str, str]:
    """Public identities by username. Users without keys are left out."""
    require_user(api_username)
    names = [name.strip() for name in usernames.split(",") if name.strip()]
    return db.get_public_identities(names)


@app.put("/encrypt/keys")
def submit_keys(
    request: SubmitKeysRequest,
    api_username: Annotated[str | None, Header()] = None,
):
    """Store the acting user's exported identity."""
    user = require_user(api_username)

    if not _may_enable(_capabilities(user, ServerSettings.from_env())):
        raise HTTPException(403, "Encryption is not available to this user")

    try:
        public = decode(request.public)
    except MalformedIdentity as e:
        raise HTTPException(422, f"Invalid public identity: {e}") from e
    if not public.is_public:
        raise HTTPException(422, "Public identity must not carry private keys")

    private = request.private
    if isinstance(private, str):
        private = {"passphrase": private}
    if not private:
        raise HTTPException(422, "At least one private key blob is required")

    if not db.set_user_keys(user["id"], request.public, private, overwrite=request.overwrite):
        raise HTTPException(409, "Keys already exist; resubmit with overwrite")
    logger.info(f"Stored keys for {user['username']} (overwrite={request.overwrite})")
    return {"success": "OK"}


# --- Topic Endpoints ---


@app.post("/t", response_model=TopicInfo)
def create_topic(
    request: CreateTopicRequest,
    api_username: Annotated[str | None, Header()] = None,
):
    """Create a topic; encrypted topics must include the creator's wrapped key."""
    user = require_user(api_username)
    if request.encrypted_title is not None and not request.key:
        raise HTTPException(422, "Encrypted topics require the creator's topic key")

    topic = db.create_topic(
        request.title,
        created_by=user["id"],
        encrypted_title=request.encrypted_title,
        wrapped_key=request.key or None,
    )
    return TopicInfo(**topic)


@app.get("/t/{topic_id}/encrypt", response_model=TopicKeyInfo)
def get_topic_key(
    topic_id: int,
    api_username: Annotated[str | None, Header()] = None,
):
    """The acting user's wrapped key and the encrypted title for a topic."""
    user = require_user(api_username)
    topic = require_topic(topic_id)
    wrapped_key = db.get_key(topic_id, user["id"])
    if wrapped_key is None:
        raise HTTPException(404, "No key for this topic")
    return TopicKeyInfo(
        topic_id=topic_id, topic_key=wrapped_key, encrypted_title=topic["encrypted_title"]
    )


@app.put("/t/{topic_id}", response_model=TopicInfo)
def update_topic(
    topic_id: int,
    request: UpdateTopicRequest,
    api_username: Annotated[str | None, Header()] = None,
):
    """Replace a topic's encrypted title."""
    user = require_user(api_username)
    require_participant(topic_id, user)
    db.set_encrypted_title(topic_id, request.encrypted_title)
    topic = db.get_topic(topic_id)
    assert topic is not None
    return TopicInfo(**topic)


@app.post("/t/{topic_id}/invite")
def invite(
    topic_id: int,
    request: InviteRequest,
    api_username: Annotated[str | None, Header()] = None,
):
    """Invite a user: participant record and wrapped key, atomically."""
    user = require_user(api_username)
    require_participant(topic_id, user)

    invitee = db.get_user_by_username(request.user)
    if invitee is None:
        raise HTTPException(404, "User not found")

    if not request.key:
        raise HTTPException(422, "A wrapped topic key is required")

    db.invite_user(topic_id, invitee["id"], request.key)
    logger.debug(f"{user['username']} invited {invitee['username']} to topic {topic_id}")
    return {"success": "OK"}


@app.delete("/t/{topic_id}/allowed-users/{username}")
def remove_allowed_user(
    topic_id: int,
    username: str,
    api_username: Annotated[str | None, Header()] = None,
):
    """Remove a user's access: participant record and wrapped key together."""
    user = require_user(api_username)
    target = db.get_user_by_username(username)
    if target is None:
        raise HTTPException(404, "User not found")

    # Anyone may leave; removing others requires being a participant
    if target["id"] != user["id"]:
        require_participant(topic_id, user)
    else:
        require_topic(topic_id)

    if not db.remove_access(topic_id, target["id"]):
        raise HTTPException(404, "User has no access to this topic")
    return {"success": "OK"}


# --- Health Check ---


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "ok"}


@app.get("/metrics")
def get_metrics(x_admin_token: Annotated[str | None, Header()] = None):
    """Get application metrics. Requires admin authentication."""
    require_admin(x_admin_token)
    settings = ServerSettings.from_env()
    return {
        **metrics.to_dict(),
        "consistency": {
            "interval_seconds": settings.consistency_interval,
            "workers": settings.consistency_workers,
        },
    }
