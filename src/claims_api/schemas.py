from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, EmailStr, Field


class UserRole(str, Enum):
    user = "user"
    admin = "admin"


class ClaimStatus(str, Enum):
    pending = "PENDING"
    approved = "APPROVED"
    rejected = "REJECTED"


class SortOrder(str, Enum):
    asc = "asc"
    desc = "desc"


class APIMessage(BaseModel):
    message: str = Field(..., description="Human readable message")


class Pagination(BaseModel):
    total: int
    page: int
    limit: int
    pages: int


# =========================
# Auth / users
# =========================

class User(BaseModel):
    id: int
    email: EmailStr
    first_name: str
    last_name: str
    role: UserRole
    is_active: bool
    last_login_at: Optional[datetime] = None
    password_changed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class TokenResponse(BaseModel):
    access_token: str = Field(..., description="JWT access token")
    token_type: str = Field("bearer", description="Token type (bearer)")
    user_id: int
    email: EmailStr
    role: UserRole
    first_name: str
    last_name: str


class RegisterRequest(BaseModel):
    email: EmailStr = Field(..., description="User email address")
    password: str = Field(..., min_length=8, description="Password (min 8 chars)")
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)


class LoginRequest(BaseModel):
    email: EmailStr = Field(..., description="User email address")
    password: str = Field(..., description="Password")


class ChangePasswordRequest(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=8)


class ForgotPasswordRequest(BaseModel):
    email: EmailStr


class ResetPasswordRequest(BaseModel):
    token: str = Field(..., min_length=1)
    new_password: str = Field(..., min_length=8)


# =========================
# User profiles
# =========================

class UserProfile(BaseModel):
    id: int
    user_id: int
    email: EmailStr
    role: UserRole
    first_name: str
    last_name: str
    data: Dict[str, Any] = Field(default_factory=dict, description="Free-form profile data")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Status, timestamps and settings")
    created_at: datetime
    updated_at: datetime


class UserProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, description="Display name")
    data: Optional[Dict[str, Any]] = Field(None, description="Merged into the stored data")


class UserProfileResponse(BaseModel):
    message: str
    user: UserProfile


class NotificationSettings(BaseModel):
    email: bool = True
    app: bool = True


class ProfileSettings(BaseModel):
    notifications: NotificationSettings = Field(default_factory=NotificationSettings)
    theme: str = "light"
    language: str = "en"
    timezone: str = "UTC"


class ProfileSettingsUpdate(BaseModel):
    notifications: Optional[NotificationSettings] = None
    theme: Optional[str] = Field(None, min_length=1)
    language: Optional[str] = Field(None, min_length=1)
    timezone: Optional[str] = Field(None, min_length=1)


class ProfileSettingsResponse(BaseModel):
    message: str
    settings: ProfileSettings


class AdminUserProfileCreate(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8, description="Password (min 8 chars)")
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    role: UserRole = UserRole.user
    data: Optional[Dict[str, Any]] = None


class AdminUserProfileUpdate(BaseModel):
    role: Optional[UserRole] = None
    data: Optional[Dict[str, Any]] = Field(None, description="Merged into the stored data")


# =========================
# Policy types
# =========================

class PolicyType(BaseModel):
    id: int
    data: List[Dict[str, Any]] = Field(..., description="Policy taxonomy forest")
    metadata: Dict[str, Any] = {}
    created_at: datetime
    updated_at: datetime


class PolicyTypeCreate(BaseModel):
    # Shape is checked by policy_tree.validate_forest so clients get a 400 with a reason.
    data: Any = Field(..., description="Array of policy nodes: {current, child_exists, child}")
    metadata: Optional[Dict[str, Any]] = None


class PolicyTypeUpdate(BaseModel):
    data: Optional[Any] = None
    metadata: Optional[Dict[str, Any]] = None


class PolicyTypeBulkCreate(BaseModel):
    policies: List[PolicyTypeCreate]


class AddPolicyNodeRequest(BaseModel):
    new_node: Dict[str, Any] = Field(..., description="Node to insert; 'current' is required")
    parent_path: Optional[str] = Field(None, description="Parent path, e.g. 'marine > container'")


class PolicyStructure(BaseModel):
    policy_id: int
    structure: List[Dict[str, Any]]
    total_nodes: int


class PolicyNodeResponse(BaseModel):
    policy_id: int
    path: str
    node: Dict[str, Any]


class PolicyLeafNodes(BaseModel):
    policy_id: int
    leaf_nodes: List[Dict[str, Any]]
    total_leaf_nodes: int


class NodeAnalytics(BaseModel):
    total_nodes: int
    nodes_by_level: Dict[int, int]
    max_depth: int


class PolicyAnalyticsEntry(BaseModel):
    id: int
    data: List[Dict[str, Any]]
    claim_count: int
    percentage: float
    node_analytics: NodeAnalytics


class PolicyAnalytics(BaseModel):
    total_policies: int
    total_claims: int
    policy_analytics: List[PolicyAnalyticsEntry]


# =========================
# Customers
# =========================

class Customer(BaseModel):
    id: int
    name: str
    city: Optional[str] = None
    number: Optional[str] = None
    email: EmailStr
    created_at: datetime
    updated_at: datetime
    claims_count: Optional[int] = None


class CustomerCreate(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    city: Optional[str] = None
    number: Optional[str] = None


class CustomerUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    city: Optional[str] = None
    number: Optional[str] = None


# =========================
# Employees
# =========================

class Employee(BaseModel):
    id: int
    name: str
    position: Optional[str] = None
    data: Dict[str, Any] = {}
    created_at: datetime
    updated_at: datetime
    claims_count: Optional[int] = None


class EmployeeCreate(BaseModel):
    name: str = Field(..., min_length=1)
    position: Optional[str] = None
    data: Optional[Dict[str, Any]] = None


class EmployeeUpdate(BaseModel):
    name: Optional[str] = None
    position: Optional[str] = None
    data: Optional[Dict[str, Any]] = Field(None, description="Merged into the stored data")


# =========================
# Claims
# =========================

class ClaimCreate(BaseModel):
    details: str = Field(..., min_length=1)
    customer_id: int
    employee_id: int
    policy_id: int
    docs: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None


class ClaimUpdate(BaseModel):
    details: Optional[str] = None
    customer_id: Optional[int] = None
    employee_id: Optional[int] = None
    policy_id: Optional[int] = None
    docs: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None


class ClaimDocumentsUpload(BaseModel):
    documents: Dict[str, Any] = Field(..., description="Merged into the claim's docs")


class ClaimStatusUpdate(BaseModel):
    status: ClaimStatus
    notes: Optional[str] = None


class ClaimStats(BaseModel):
    total: int
    pending: int
    approved: int
    rejected: int
