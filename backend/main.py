# MPMS Backend: mentor allocation, freeze gate and evaluations

import os
import time
import logging
import datetime
from datetime import timezone
from typing import Optional, List, Callable, Dict

from fastapi import FastAPI, HTTPException, Depends, status, Header, Response, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.base import BaseHTTPMiddleware
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError
from bson import ObjectId
from bson.errors import InvalidId

import auth
import database
import errors
import models
from errors import ApiError
from models import Role, RequestStatus, ProjectStatus, MemberRole

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

MAX_PENDING_REQUESTS = 3
DEFAULT_MENTOR_CAPACITY = 10


class LoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        start = time.monotonic()

        response = await call_next(request)

        duration = time.monotonic() - start
        logger.info(
            "%s %s -> %s (%.2fs)",
            request.method,
            request.url.path,
            response.status_code,
            duration,
        )
        return response


# --- App Initialization ---
app = FastAPI(title="MPMS Backend")

origins = [os.getenv("FRONTEND_URL", "http://localhost:5173")]

app.add_middleware(LoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
errors.register_error_handlers(app)


# --- Database Connection Lifecycle (Synchronous) ---
@app.on_event("startup")
def startup_db_client():
    try:
        database.connect_to_mongo()
        database.create_admin_user()
    except database.ConnectionFailure:
        logger.critical("Could not connect to MongoDB on startup; requests will fail until it is reachable.")


@app.on_event("shutdown")
def shutdown_db_client():
    database.close_mongo_connection()


# --- Dependencies ---
def get_db() -> Database:
    # raises ConnectionFailure if not connected
    return database.get_database()


def get_current_user(
    authorization: Optional[str] = Header(None),
    db: Database = Depends(get_db)
) -> dict:
    """Extract and verify JWT token, return current user from database"""
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Access token required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authorization header format. Expected: Bearer <token>",
            headers={"WWW-Authenticate": "Bearer"},
        )

    token_data = auth.verify_token(parts[1])
    if not token_data or not token_data.email:
        raise ApiError(
            status.HTTP_401_UNAUTHORIZED,
            "TOKEN_EXPIRED",
            "Invalid or expired access token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = db.users.find_one({"email": token_data.email.lower()})
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user["_id"] = str(user["_id"])
    return user


def require_roles(*roles: Role):
    """Dependency factory: only callers holding one of ``roles`` get through."""
    allowed = {role.value for role in roles}

    def dependency(current_user: dict = Depends(get_current_user)) -> dict:
        if current_user.get("role") not in allowed:
            raise errors.forbidden("Insufficient permissions")
        return current_user

    return dependency


# --- Helpers ---
def utcnow() -> datetime.datetime:
    return datetime.datetime.now(timezone.utc)


def to_object_id(value) -> Optional[ObjectId]:
    """Parses a hex id; malformed ids are treated as absent documents."""
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def find_by_id(collection, value) -> Optional[dict]:
    object_id = to_object_id(value)
    if object_id is None:
        return None
    return collection.find_one({"_id": object_id})


def fetch_users_by_ids(db: Database, user_ids) -> Dict[str, dict]:
    """One query for a whole id set, keyed by string id."""
    object_ids = [oid for oid in (to_object_id(uid) for uid in set(user_ids)) if oid]
    if not object_ids:
        return {}
    users = db.users.find({"_id": {"$in": object_ids}}, {"name": 1, "email": 1, "role": 1})
    return {str(user["_id"]): user for user in users}


def parse_score(value) -> float:
    """Scores arrive as raw JSON; only non-negative numbers are accepted."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise errors.validation("totalScore must be a number")
    if value < 0:
        raise errors.validation("totalScore must not be negative")
    return value


def require_unfrozen(db: Database, flag: str, message: str) -> None:
    # read fresh on every call, a toggle applies to the very next request
    settings = database.get_freeze_settings(db)
    if settings.get(flag):
        raise errors.frozen(message)


def log_activity(db: Database, project_id: str, actor_id: str, action_type: str, metadata: dict) -> None:
    db.activity_logs.insert_one({
        "projectId": project_id,
        "actorId": actor_id,
        "actionType": action_type,
        "metadata": metadata,
        "createdAt": utcnow(),
    })


def get_project_for_member(db: Database, project_id: str, current_user: dict) -> dict:
    """Loads a project the caller may see: a member of it, or an admin."""
    project = find_by_id(db.projects, project_id)
    if not project:
        raise errors.not_found("Project not found")

    if current_user.get("role") != Role.ADMIN.value:
        is_member = db.project_members.find_one({
            "projectId": str(project["_id"]),
            "userId": current_user["_id"],
        })
        if not is_member:
            raise errors.forbidden("Not a member of this project")

    return project


# --- API Endpoints ---

@app.get("/health")
async def health():
    return {"status": "ok", "name": "MPMS API", "version": "1.0.0"}


@app.post("/auth/register", response_model=models.UserPublic, status_code=status.HTTP_201_CREATED)
async def register_user(user_data: models.UserCreate, db: Database = Depends(get_db)):
    """Registers a new student account. Tokens are issued by the credential service."""
    email = user_data.email.lower()
    if not auth.is_allowed_email(email):
        raise errors.validation(f"Only {auth.ALLOWED_EMAIL_DOMAIN} emails are allowed")

    if db.users.find_one({"email": email}):
        raise ApiError(status.HTTP_409_CONFLICT, "CONFLICT", "Email already registered")

    user_doc = {
        "name": user_data.name,
        "email": email,
        "hashedPassword": auth.get_password_hash(user_data.password),
        "role": Role.STUDENT.value,
        "department": user_data.department or "Unassigned",
        "semester": user_data.semester,
        "createdAt": utcnow(),
    }

    try:
        result = db.users.insert_one(user_doc)
    except DuplicateKeyError:
        raise ApiError(status.HTTP_409_CONFLICT, "CONFLICT", "Email already registered")

    logger.info("Registered student %s", email)
    return db.users.find_one({"_id": result.inserted_id})


@app.get("/users/me", response_model=models.UserPublic)
async def get_current_user_details(current_user: dict = Depends(get_current_user)):
    return current_user


# ============================================
# MENTOR ENDPOINTS
# ============================================

@app.get("/mentors", response_model=List[models.MentorSummary])
async def list_mentors(
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db)
):
    """List mentors with their capacity and specialization."""
    mentors = list(db.users.find({"role": Role.MENTOR.value}).sort("name", 1))
    mentor_ids = [str(mentor["_id"]) for mentor in mentors]
    profiles = {
        profile["userId"]: profile
        for profile in db.mentor_profiles.find({"userId": {"$in": mentor_ids}})
    }

    result = []
    for mentor in mentors:
        profile = profiles.get(str(mentor["_id"]), {})
        capacity = profile.get("capacity", 0)
        current_load = profile.get("currentLoad", 0)
        result.append({
            "id": str(mentor["_id"]),
            "name": mentor.get("name"),
            "email": mentor.get("email"),
            "department": mentor.get("department"),
            "specialization": profile.get("specializationTags", []),
            "capacity": capacity,
            "currentLoad": current_load,
            "acceptingRequests": profile.get("acceptingRequests", False),
            "remainingSlots": capacity - current_load,
        })
    return result


@app.post("/mentors/requests", response_model=models.MentorRequest, status_code=status.HTTP_201_CREATED)
async def create_mentor_request(
    request_data: models.CreateMentorRequest,
    current_user: dict = Depends(require_roles(Role.STUDENT)),
    db: Database = Depends(get_db)
):
    """Student asks a mentor to take them on."""
    mentor_id = (request_data.mentorId or "").strip()
    if not mentor_id:
        raise errors.validation("mentorId is required")

    require_unfrozen(db, "allocation", "Mentor allocation is currently frozen")

    mentor_obj_id = to_object_id(mentor_id)
    mentor = None
    if mentor_obj_id:
        mentor = db.users.find_one({"_id": mentor_obj_id, "role": Role.MENTOR.value})
    if not mentor:
        raise errors.not_found("Mentor not found")

    profile = db.mentor_profiles.find_one({"userId": mentor_id})
    if not profile or not profile.get("acceptingRequests"):
        raise ApiError(status.HTTP_400_BAD_REQUEST, "NOT_ACCEPTING", "Mentor is not accepting requests")

    if profile.get("currentLoad", 0) >= profile.get("capacity", 0):
        raise ApiError(status.HTTP_400_BAD_REQUEST, "CAPACITY_FULL", "Mentor has reached full capacity")

    student_id = current_user["_id"]

    if db.mentor_requests.find_one({"studentId": student_id, "status": RequestStatus.ACCEPTED.value}):
        raise ApiError(status.HTTP_400_BAD_REQUEST, "ALREADY_ALLOCATED", "You already have a mentor assigned")

    pending_count = db.mentor_requests.count_documents({
        "studentId": student_id,
        "status": RequestStatus.PENDING.value,
    })
    if pending_count >= MAX_PENDING_REQUESTS:
        raise ApiError(
            status.HTTP_400_BAD_REQUEST,
            "MAX_PENDING",
            f"Maximum {MAX_PENDING_REQUESTS} pending requests allowed",
        )

    duplicate = db.mentor_requests.find_one({
        "studentId": student_id,
        "mentorId": mentor_id,
        "status": RequestStatus.PENDING.value,
    })
    if duplicate:
        raise ApiError(status.HTTP_409_CONFLICT, "DUPLICATE", "You already have a pending request to this mentor")

    now = utcnow()
    request_doc = {
        "studentId": student_id,
        "mentorId": mentor_id,
        "status": RequestStatus.PENDING.value,
        "message": request_data.message or "",
        "createdAt": now,
        "updatedAt": now,
    }
    result = db.mentor_requests.insert_one(request_doc)
    logger.info("Mentor request %s created: student %s -> mentor %s", result.inserted_id, student_id, mentor_id)

    return db.mentor_requests.find_one({"_id": result.inserted_id})


# Which requests each role may list; roles missing here see nothing.
REQUEST_SCOPES: Dict[str, Callable[[str], dict]] = {
    Role.MENTOR.value: lambda user_id: {"mentorId": user_id},
    Role.STUDENT.value: lambda user_id: {"studentId": user_id},
    Role.ADMIN.value: lambda user_id: {},
}


@app.get("/mentors/requests", response_model=List[models.MentorRequestEnriched])
async def list_mentor_requests(
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db)
):
    """Mentors see incoming requests, students their own, admins all."""
    scope = REQUEST_SCOPES.get(current_user.get("role"))
    if scope is None:
        return []

    requests = list(db.mentor_requests.find(scope(current_user["_id"])).sort("createdAt", -1))

    user_ids = [r["studentId"] for r in requests] + [r["mentorId"] for r in requests]
    users = fetch_users_by_ids(db, user_ids)

    for request in requests:
        student = users.get(request["studentId"], {})
        mentor = users.get(request["mentorId"], {})
        request["studentName"] = student.get("name")
        request["studentEmail"] = student.get("email")
        request["mentorName"] = mentor.get("name")
        request["mentorEmail"] = mentor.get("email")

    return requests


def _transition_request(db: Database, request_obj_id: ObjectId, new_status: RequestStatus) -> Optional[dict]:
    """Moves a request out of PENDING; None when it is no longer pending."""
    return db.mentor_requests.find_one_and_update(
        {"_id": request_obj_id, "status": RequestStatus.PENDING.value},
        {"$set": {"status": new_status.value, "updatedAt": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )


def _claim_mentor_slot(db: Database, mentor_id: str, attempts: int = 2) -> bool:
    """Increments currentLoad only while it is below capacity, in one update.

    The filter pins the capacity that was read, so a concurrent capacity edit
    makes the update miss; the profile is then re-read and the claim retried.
    """
    for _ in range(attempts):
        profile = db.mentor_profiles.find_one({"userId": mentor_id})
        if not profile:
            return False

        capacity = profile.get("capacity", 0)
        if profile.get("currentLoad", 0) >= capacity:
            return False

        result = db.mentor_profiles.update_one(
            {"_id": profile["_id"], "capacity": capacity, "currentLoad": {"$lt": capacity}},
            {"$inc": {"currentLoad": 1}},
        )
        if result.modified_count == 1:
            return True
    return False


def _release_mentor_slot(db: Database, mentor_id: str) -> None:
    db.mentor_profiles.update_one(
        {"userId": mentor_id, "currentLoad": {"$gt": 0}},
        {"$inc": {"currentLoad": -1}},
    )


def _materialize_project(db: Database, mentor_request: dict, mentor: dict) -> str:
    """Creates the ACTIVE project and both memberships for an accepted request."""
    student_id = mentor_request["studentId"]
    student = find_by_id(db.users, student_id) or {}

    now = utcnow()
    project_doc = {
        "title": f"Project - {student.get('name') or 'Student'}",
        "description": mentor_request.get("message") or "To be defined",
        "mentorId": mentor["_id"],
        "techStack": [],
        "maxTeamSize": 4,
        "status": ProjectStatus.ACTIVE.value,
        "createdAt": now,
        "updatedAt": now,
    }
    project_id = str(db.projects.insert_one(project_doc).inserted_id)

    db.project_members.insert_many([
        {"projectId": project_id, "userId": mentor["_id"], "memberRole": MemberRole.MENTOR.value},
        {"projectId": project_id, "userId": student_id, "memberRole": MemberRole.STUDENT.value},
    ])

    log_activity(db, project_id, mentor["_id"], "MENTOR_ACCEPTED", {
        "studentId": student_id,
        "requestId": str(mentor_request["_id"]),
    })
    return project_id


def _accept_request(db: Database, mentor_request: dict, mentor: dict) -> dict:
    student_id = mentor_request["studentId"]

    if db.mentor_requests.find_one({"studentId": student_id, "status": RequestStatus.ACCEPTED.value}):
        raise ApiError(status.HTTP_400_BAD_REQUEST, "ALREADY_ALLOCATED", "Student already has a mentor assigned")

    if not _claim_mentor_slot(db, mentor["_id"]):
        raise ApiError(status.HTTP_400_BAD_REQUEST, "CAPACITY_FULL", "Mentor has reached full capacity")

    updated = _transition_request(db, mentor_request["_id"], RequestStatus.ACCEPTED)
    if updated is None:
        _release_mentor_slot(db, mentor["_id"])
        raise errors.invalid_state()

    try:
        db.mentor_requests.update_many(
            {
                "studentId": student_id,
                "status": RequestStatus.PENDING.value,
                "_id": {"$ne": mentor_request["_id"]},
            },
            {"$set": {"status": RequestStatus.REJECTED.value, "updatedAt": utcnow()}},
        )
        project_id = _materialize_project(db, mentor_request, mentor)
    except PyMongoError:
        # no compensation: the claimed slot stays counted
        logger.error("Acceptance of request %s only partially applied", mentor_request["_id"])
        raise

    logger.info(
        "Mentor %s accepted request %s; project %s created for student %s",
        mentor["_id"], mentor_request["_id"], project_id, student_id,
    )
    return updated


def _mentor_respond(db: Database, mentor_request: dict, target: Optional[str], mentor: dict) -> dict:
    if mentor_request["mentorId"] != mentor["_id"]:
        raise errors.forbidden("Not your request")
    if target not in (RequestStatus.ACCEPTED.value, RequestStatus.REJECTED.value):
        raise errors.validation("Status must be ACCEPTED or REJECTED")
    if mentor_request.get("status") != RequestStatus.PENDING.value:
        raise errors.invalid_state()

    if target == RequestStatus.ACCEPTED.value:
        return _accept_request(db, mentor_request, mentor)

    updated = _transition_request(db, mentor_request["_id"], RequestStatus.REJECTED)
    if updated is None:
        raise errors.invalid_state()
    logger.info("Mentor %s rejected request %s", mentor["_id"], mentor_request["_id"])
    return updated


def _student_withdraw(db: Database, mentor_request: dict, target: Optional[str], student: dict) -> dict:
    if mentor_request["studentId"] != student["_id"]:
        raise errors.forbidden("Not your request")
    if target != RequestStatus.WITHDRAWN.value:
        raise errors.validation("Students can only WITHDRAW")
    if mentor_request.get("status") != RequestStatus.PENDING.value:
        raise errors.invalid_state()

    updated = _transition_request(db, mentor_request["_id"], RequestStatus.WITHDRAWN)
    if updated is None:
        raise errors.invalid_state()
    logger.info("Student %s withdrew request %s", student["_id"], mentor_request["_id"])
    return updated


# Mentors accept/reject, students withdraw; every other role is refused.
REQUEST_TRANSITIONS = {
    Role.MENTOR.value: _mentor_respond,
    Role.STUDENT.value: _student_withdraw,
}


@app.patch("/mentors/requests/{request_id}", response_model=models.MentorRequest)
async def update_mentor_request(
    request_id: str,
    update_data: Optional[models.UpdateMentorRequest] = None,
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db)
):
    """Accept, reject or withdraw a pending mentor request."""
    mentor_request = find_by_id(db.mentor_requests, request_id)
    if not mentor_request:
        raise errors.not_found("Request not found")

    require_unfrozen(db, "allocation", "Allocation is frozen")

    transition = REQUEST_TRANSITIONS.get(current_user.get("role"))
    if transition is None:
        raise errors.forbidden("Only mentors and students can update requests")

    target = update_data.status if update_data else None
    return transition(db, mentor_request, target, current_user)


# ============================================
# PROJECT ENDPOINTS
# ============================================

@app.get("/projects", response_model=List[models.Project])
async def list_projects(
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db)
):
    """Admins see every project, everyone else the projects they belong to."""
    if current_user.get("role") == Role.ADMIN.value:
        query = {}
    else:
        memberships = db.project_members.find({"userId": current_user["_id"]}, {"projectId": 1})
        project_ids = [to_object_id(m["projectId"]) for m in memberships]
        query = {"_id": {"$in": [pid for pid in project_ids if pid]}}

    return list(db.projects.find(query).sort("createdAt", -1))


@app.get("/projects/{project_id}", response_model=models.ProjectDetail)
async def get_project(
    project_id: str,
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db)
):
    project = get_project_for_member(db, project_id, current_user)

    members = list(db.project_members.find({"projectId": str(project["_id"])}))
    users = fetch_users_by_ids(db, [m["userId"] for m in members])
    project["members"] = [
        {
            "userId": m["userId"],
            "memberRole": m["memberRole"],
            "name": users.get(m["userId"], {}).get("name"),
            "email": users.get(m["userId"], {}).get("email"),
        }
        for m in members
    ]
    return project


@app.get("/projects/{project_id}/activity", response_model=List[models.ActivityLog])
async def get_project_activity(
    project_id: str,
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db)
):
    project = get_project_for_member(db, project_id, current_user)
    return list(db.activity_logs.find({"projectId": str(project["_id"])}).sort("createdAt", -1))


# ============================================
# INTERNAL EVALUATION ENDPOINTS
# ============================================

@app.post(
    "/projects/{project_id}/internal-evaluations",
    response_model=models.InternalEvaluation,
    status_code=status.HTTP_201_CREATED,
)
async def submit_internal_evaluation(
    project_id: str,
    response: Response,
    evaluation_data: Optional[models.InternalEvaluationCreate] = None,
    current_user: dict = Depends(require_roles(Role.MENTOR, Role.ADMIN)),
    db: Database = Depends(get_db)
):
    """Mentor enters (or revises) a student's internal marks."""
    project = get_project_for_member(db, project_id, current_user)
    project_id = str(project["_id"])

    require_unfrozen(db, "internalMarks", "Internal marks entry is currently frozen")

    evaluation_data = evaluation_data or models.InternalEvaluationCreate()
    if not evaluation_data.studentId or evaluation_data.totalScore is None:
        raise errors.validation("studentId and totalScore are required")
    total_score = parse_score(evaluation_data.totalScore)

    is_student_member = db.project_members.find_one({
        "projectId": project_id,
        "userId": evaluation_data.studentId,
        "memberRole": MemberRole.STUDENT.value,
    })
    if not is_student_member:
        raise errors.validation("Student is not a member of this project")

    key = {
        "projectId": project_id,
        "studentId": evaluation_data.studentId,
        "mentorId": current_user["_id"],
    }
    now = utcnow()

    existing = db.internal_evaluations.find_one(key)
    if existing:
        if existing.get("locked"):
            raise ApiError(status.HTTP_403_FORBIDDEN, "LOCKED", "Evaluation is locked")

        changes = {"totalScore": total_score, "updatedAt": now}
        if evaluation_data.criteria:
            changes["criteria"] = evaluation_data.criteria
        if evaluation_data.remarks:
            changes["remarks"] = evaluation_data.remarks

        response.status_code = status.HTTP_200_OK
        return db.internal_evaluations.find_one_and_update(
            {"_id": existing["_id"]},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )

    evaluation_doc = dict(key)
    evaluation_doc.update({
        "criteria": evaluation_data.criteria or dict(models.DEFAULT_CRITERIA),
        "totalScore": total_score,
        "remarks": evaluation_data.remarks or "",
        "locked": False,
        "createdAt": now,
        "updatedAt": now,
    })
    result = db.internal_evaluations.insert_one(evaluation_doc)

    log_activity(db, project_id, current_user["_id"], "INTERNAL_EVALUATION", {
        "studentId": evaluation_data.studentId,
        "totalScore": total_score,
    })
    return db.internal_evaluations.find_one({"_id": result.inserted_id})


@app.get("/projects/{project_id}/internal-evaluations", response_model=List[models.InternalEvaluationEnriched])
async def list_internal_evaluations(
    project_id: str,
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db)
):
    project = get_project_for_member(db, project_id, current_user)

    query = {"projectId": str(project["_id"])}
    if current_user.get("role") == Role.STUDENT.value:
        query["studentId"] = current_user["_id"]

    evaluations = list(db.internal_evaluations.find(query))
    users = fetch_users_by_ids(
        db, [e["studentId"] for e in evaluations] + [e["mentorId"] for e in evaluations]
    )
    for evaluation in evaluations:
        evaluation["studentName"] = users.get(evaluation["studentId"], {}).get("name")
        evaluation["mentorName"] = users.get(evaluation["mentorId"], {}).get("name")
    return evaluations


@app.patch("/internal-evaluations/{evaluation_id}/lock", response_model=models.InternalEvaluation)
async def lock_internal_evaluation(
    evaluation_id: str,
    lock_data: models.LockRequest,
    admin_user: dict = Depends(require_roles(Role.ADMIN)),
    db: Database = Depends(get_db)
):
    evaluation = find_by_id(db.internal_evaluations, evaluation_id)
    if not evaluation:
        raise errors.not_found("Evaluation not found")

    locked = lock_data.locked is not False
    return db.internal_evaluations.find_one_and_update(
        {"_id": evaluation["_id"]},
        {"$set": {"locked": locked, "updatedAt": utcnow()}},
        return_document=ReturnDocument.AFTER,
    )


# ============================================
# PRESENTATION EVALUATION ENDPOINTS
# ============================================

@app.post(
    "/presentations/slots/{slot_id}/evaluation",
    response_model=models.PresentationEvaluation,
    status_code=status.HTTP_201_CREATED,
)
async def submit_presentation_evaluation(
    slot_id: str,
    evaluation_data: Optional[models.PresentationEvaluationCreate] = None,
    current_user: dict = Depends(require_roles(Role.PBL_FACULTY, Role.ADMIN)),
    db: Database = Depends(get_db)
):
    """Evaluator records marks for a presentation slot."""
    slot = find_by_id(db.presentation_slots, slot_id)
    if not slot:
        raise errors.not_found("Slot not found")

    require_unfrozen(db, "presentations", "Presentation marks are frozen")

    evaluation_data = evaluation_data or models.PresentationEvaluationCreate()
    if evaluation_data.totalScore is None:
        raise errors.validation("totalScore is required")
    total_score = parse_score(evaluation_data.totalScore)

    evaluation_doc = {
        "slotId": str(slot["_id"]),
        "evaluatorId": current_user["_id"],
        "attendance": evaluation_data.attendance or "PRESENT",
        "rubric": evaluation_data.rubric or {},
        "totalScore": total_score,
        "feedback": evaluation_data.feedback or "",
        "createdAt": utcnow(),
    }
    result = db.presentation_evaluations.insert_one(evaluation_doc)
    return db.presentation_evaluations.find_one({"_id": result.inserted_id})


@app.get("/presentations/slots/{slot_id}/evaluations", response_model=List[models.PresentationEvaluationEnriched])
async def list_presentation_evaluations(
    slot_id: str,
    current_user: dict = Depends(get_current_user),
    db: Database = Depends(get_db)
):
    slot = find_by_id(db.presentation_slots, slot_id)
    if not slot:
        raise errors.not_found("Slot not found")

    evaluations = list(db.presentation_evaluations.find({"slotId": str(slot["_id"])}))
    users = fetch_users_by_ids(db, [e["evaluatorId"] for e in evaluations])
    for evaluation in evaluations:
        evaluation["evaluatorName"] = users.get(evaluation["evaluatorId"], {}).get("name")
    return evaluations


# ============================================
# ADMIN ENDPOINTS
# ============================================

@app.get("/admin/users", response_model=List[models.UserPublic])
async def get_all_users(
    admin_user: dict = Depends(require_roles(Role.ADMIN)),
    db: Database = Depends(get_db)
):
    return list(db.users.find({}).sort("createdAt", 1))


@app.patch("/admin/users/{user_id}/role", response_model=models.RoleChangeResponse)
async def update_user_role(
    user_id: str,
    role_data: models.UpdateRoleRequest,
    admin_user: dict = Depends(require_roles(Role.ADMIN)),
    db: Database = Depends(get_db)
):
    """Admin-only: changes a user's role; promotion to MENTOR opens a profile."""
    valid_roles = [role.value for role in Role]
    if not role_data.role or role_data.role not in valid_roles:
        raise errors.validation(f"Role must be one of: {', '.join(valid_roles)}")

    user = find_by_id(db.users, user_id)
    if not user:
        raise errors.not_found("User not found")

    old_role = user.get("role")
    updated_user = db.users.find_one_and_update(
        {"_id": user["_id"]},
        {"$set": {"role": role_data.role}},
        return_document=ReturnDocument.AFTER,
    )

    if role_data.role == Role.MENTOR.value:
        # upsert keeps an existing profile (and its load) untouched
        db.mentor_profiles.update_one(
            {"userId": str(user["_id"])},
            {"$setOnInsert": {
                "specializationTags": [],
                "capacity": DEFAULT_MENTOR_CAPACITY,
                "currentLoad": 0,
                "acceptingRequests": True,
            }},
            upsert=True,
        )

    logger.info("Admin %s changed role of %s from %s to %s", admin_user["_id"], user["_id"], old_role, role_data.role)
    return {
        "message": f"Role updated from {old_role} to {role_data.role}",
        "user": updated_user,
    }


@app.patch("/admin/mentor-profiles/{user_id}", response_model=models.MentorProfileResponse)
async def update_mentor_profile(
    user_id: str,
    update_data: models.MentorProfileUpdate,
    admin_user: dict = Depends(require_roles(Role.ADMIN)),
    db: Database = Depends(get_db)
):
    profile = db.mentor_profiles.find_one({"userId": user_id})
    if not profile:
        raise errors.not_found("Mentor profile not found")

    # drop None values so Mongo doesn't overwrite fields that weren't provided
    update_doc = {k: v for k, v in update_data.model_dump(exclude_unset=True).items() if v is not None}
    if update_doc:
        profile = db.mentor_profiles.find_one_and_update(
            {"_id": profile["_id"]},
            {"$set": update_doc},
            return_document=ReturnDocument.AFTER,
        )
    return {"message": "Mentor profile updated", "profile": profile}


@app.get("/admin/freeze-settings", response_model=models.FreezeSettings)
async def get_freeze_settings(
    admin_user: dict = Depends(require_roles(Role.ADMIN)),
    db: Database = Depends(get_db)
):
    return database.get_freeze_settings(db)


@app.patch("/admin/freeze", response_model=models.FreezeSettings)
async def toggle_freeze(
    freeze_data: models.FreezeUpdate,
    admin_user: dict = Depends(require_roles(Role.ADMIN)),
    db: Database = Depends(get_db)
):
    """Sets any subset of the freeze flags."""
    # a key that is present counts, null included (stored as false)
    changes = freeze_data.model_dump(exclude_unset=True)
    if not changes:
        return database.get_freeze_settings(db)

    settings = database.update_freeze_settings(db, changes, admin_user["_id"])
    logger.info("Admin %s updated freeze settings: %s", admin_user["_id"], changes)
    return settings


@app.post("/admin/freeze", response_model=models.FreezeTargetResponse)
async def set_freeze_target(
    freeze_data: models.FreezeTargetRequest,
    admin_user: dict = Depends(require_roles(Role.ADMIN)),
    db: Database = Depends(get_db)
):
    """Legacy form: freezes (or unfreezes) a single target."""
    if not freeze_data.target or freeze_data.target not in database.FREEZE_FLAGS:
        raise errors.validation(f"Target must be one of: {', '.join(database.FREEZE_FLAGS)}")

    value = freeze_data.frozen is not False
    settings = database.update_freeze_settings(db, {freeze_data.target: value}, admin_user["_id"])
    logger.info("Admin %s set %s freeze to %s", admin_user["_id"], freeze_data.target, value)
    return {
        "message": f"{freeze_data.target} freeze set to {str(value).lower()}",
        "freezeSettings": settings,
    }


# --- Run the server (for local development) ---
if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=int(os.getenv("PORT", "5000")), reload=True)
