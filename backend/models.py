# Data Models

from enum import Enum
from datetime import datetime
from typing import Optional, Any, Dict, List

from pydantic import BaseModel, EmailStr, Field, AliasChoices, field_validator
from bson import ObjectId


class Role(str, Enum):
    STUDENT = "STUDENT"
    MENTOR = "MENTOR"
    PBL_FACULTY = "PBL_FACULTY"
    ADMIN = "ADMIN"


class RequestStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    WITHDRAWN = "WITHDRAWN"


class ProjectStatus(str, Enum):
    IDEA = "IDEA"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    ARCHIVED = "ARCHIVED"


class MemberRole(str, Enum):
    MENTOR = "MENTOR"
    STUDENT = "STUDENT"


class DocumentModel(BaseModel):
    """Base for models read back from MongoDB.

    Accepts the raw ``_id`` (ObjectId or str) and exposes it as ``id``.
    """
    id: str = Field(..., validation_alias=AliasChoices("_id", "id"))

    @field_validator("id", mode="before")
    @classmethod
    def _stringify_id(cls, value):
        if isinstance(value, ObjectId):
            return str(value)
        return value

    class Config:
        populate_by_name = True
        from_attributes = True
        arbitrary_types_allowed = True


# ============================================
# USER MODELS
# ============================================

class UserCreate(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    department: Optional[str] = None
    semester: Optional[int] = None


class UserPublic(DocumentModel):
    """User model without sensitive info"""
    name: str
    email: EmailStr
    role: Role
    department: Optional[str] = "Unassigned"
    semester: Optional[int] = None
    createdAt: Optional[datetime] = None


class UpdateRoleRequest(BaseModel):
    role: Optional[str] = None


class RoleChangeResponse(BaseModel):
    message: str
    user: UserPublic


class TokenData(BaseModel):
    email: Optional[EmailStr] = None
    role: Optional[str] = None


# ============================================
# MENTOR MODELS
# ============================================

class MentorProfile(DocumentModel):
    userId: str
    specializationTags: List[str] = []
    capacity: int = 10
    currentLoad: int = 0
    acceptingRequests: bool = True


class MentorProfileUpdate(BaseModel):
    """Admin-only: partial update of a mentor profile."""
    capacity: Optional[int] = Field(None, ge=0)
    acceptingRequests: Optional[bool] = None
    specializationTags: Optional[List[str]] = None


class MentorProfileResponse(BaseModel):
    message: str
    profile: MentorProfile


class MentorSummary(BaseModel):
    """A mentor as listed to students looking for one."""
    id: str
    name: str
    email: EmailStr
    department: Optional[str] = None
    specialization: List[str] = []
    capacity: int = 0
    currentLoad: int = 0
    acceptingRequests: bool = False
    remainingSlots: int = 0


class CreateMentorRequest(BaseModel):
    # Optional here so a missing mentorId is reported as VALIDATION by the handler
    mentorId: Optional[str] = None
    message: Optional[str] = None


class UpdateMentorRequest(BaseModel):
    # any JSON value; each role arm decides what it accepts
    status: Optional[Any] = None


class MentorRequest(DocumentModel):
    studentId: str
    mentorId: str
    status: RequestStatus = RequestStatus.PENDING
    message: str = ""
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None


class MentorRequestEnriched(MentorRequest):
    studentName: Optional[str] = None
    studentEmail: Optional[str] = None
    mentorName: Optional[str] = None
    mentorEmail: Optional[str] = None


# ============================================
# PROJECT MODELS
# ============================================

class ProjectMember(BaseModel):
    userId: str
    memberRole: MemberRole
    name: Optional[str] = None
    email: Optional[str] = None


class Project(DocumentModel):
    title: str
    description: str = ""
    mentorId: str
    techStack: List[str] = []
    maxTeamSize: int = 4
    status: ProjectStatus = ProjectStatus.IDEA
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None


class ProjectDetail(Project):
    members: List[ProjectMember] = []


class ActivityLog(DocumentModel):
    projectId: str
    actorId: str
    actionType: str
    metadata: Dict[str, Any] = {}
    createdAt: Optional[datetime] = None


# ============================================
# FREEZE MODELS
# ============================================

class FreezeSettings(BaseModel):
    allocation: bool = False
    internalMarks: bool = False
    presentations: bool = False


class FreezeUpdate(BaseModel):
    """Any subset of the three flags; absent keys are left as they are."""
    allocation: Optional[bool] = None
    internalMarks: Optional[bool] = None
    presentations: Optional[bool] = None


class FreezeTargetRequest(BaseModel):
    target: Optional[str] = None
    frozen: Optional[bool] = None


class FreezeTargetResponse(BaseModel):
    message: str
    freezeSettings: FreezeSettings


# ============================================
# EVALUATION MODELS
# ============================================

DEFAULT_CRITERIA = {
    "attendance": 0,
    "diaryConsistency": 0,
    "progressShown": 0,
    "contribution": 0,
}


class InternalEvaluationCreate(BaseModel):
    # presence is checked by the handler, after the freeze gate
    studentId: Optional[str] = None
    totalScore: Optional[Any] = None
    criteria: Optional[Dict[str, Any]] = None
    remarks: Optional[str] = None


class InternalEvaluation(DocumentModel):
    projectId: str
    studentId: str
    mentorId: str
    criteria: Dict[str, Any] = {}
    totalScore: float
    remarks: str = ""
    locked: bool = False
    createdAt: Optional[datetime] = None
    updatedAt: Optional[datetime] = None


class InternalEvaluationEnriched(InternalEvaluation):
    studentName: Optional[str] = None
    mentorName: Optional[str] = None


class LockRequest(BaseModel):
    locked: Optional[bool] = None


class PresentationEvaluationCreate(BaseModel):
    totalScore: Optional[Any] = None
    attendance: Optional[str] = None
    rubric: Optional[Dict[str, Any]] = None
    feedback: Optional[str] = None


class PresentationEvaluation(DocumentModel):
    slotId: str
    evaluatorId: str
    attendance: str = "PRESENT"
    rubric: Dict[str, Any] = {}
    totalScore: float
    feedback: str = ""
    createdAt: Optional[datetime] = None


class PresentationEvaluationEnriched(PresentationEvaluation):
    evaluatorName: Optional[str] = None
