"""
Database Schemas for the Asset Tracker

Each Pydantic model below represents a document collection. Documents are
stored in JSON mode, so dates travel as ISO strings.

- Company -> "companies"
- Employee -> "employees" (id shared with the login identity)
- Asset -> "assets" (assignment history embedded)
- RecentActivity -> "activity"
"""

from datetime import date, datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

AssetCategory = Literal["Laptop", "Desktop", "Phone", "Tablet", "Other"]
AssetStatus = Literal["Available", "In Use", "In Repair", "Decommissioned"]
Role = Literal["Admin", "Employee"]

ASSET_STATUSES = ("Available", "In Use", "In Repair", "Decommissioned")


class Company(BaseModel):
    id: str
    name: str = Field(..., min_length=1)


class Employee(BaseModel):
    id: str
    name: str
    email: EmailStr
    department: str = "Unassigned"
    job_title: str = "New Employee"
    avatar_url: str = ""
    role: Role = Field("Employee", description="Admins can manage companies and employees")
    active: bool = Field(False, description="Inactive profiles cannot log in")

    @property
    def is_admin(self) -> bool:
        return self.role == "Admin"


class Assignment(BaseModel):
    date: date
    assigned_to: str = Field("", description="Employee id, empty when unassigned")
    status: AssetStatus
    notes: Optional[str] = None


class Asset(BaseModel):
    id: str
    serial_number: str
    tag_no: str = Field(..., description="Unique tag, compared case-insensitively")
    category: AssetCategory
    company_id: str
    brand: str
    model: str
    purchase_date: date
    warranty_expiry: date
    asset_value: float = Field(0, ge=0)
    status: AssetStatus = "Available"
    assigned_to: str = ""
    photo_url: Optional[str] = None
    history: List[Assignment] = []


class RecentActivity(BaseModel):
    id: Optional[str] = None
    asset_id: str
    asset_serial: str
    employee_id: str
    employee_name: str
    date: datetime
    action: Literal["Assigned", "Returned"]


class DashboardStats(BaseModel):
    total: int = 0
    in_use: int = 0
    available: int = 0
    in_repair: int = 0
    decommissioned: int = 0
    by_category: Dict[str, int] = {}
    by_status: Dict[str, int] = {}


# ----------------------------
# Write payloads
# ----------------------------
class CompanyCreate(BaseModel):
    name: str = Field(..., min_length=1)


class CompanyUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)


class EmployeeCreate(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    department: str = Field("Unassigned", min_length=1)
    job_title: str = Field("New Employee", min_length=1)
    role: Role = "Employee"


class EmployeeUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    department: Optional[str] = Field(None, min_length=1)
    job_title: Optional[str] = Field(None, min_length=1)
    avatar_url: Optional[str] = None
    role: Optional[Role] = None
    active: Optional[bool] = None


class ProfileUpdate(BaseModel):
    """Self-service fields; role and active stay admin-only."""
    name: Optional[str] = Field(None, min_length=1)
    department: Optional[str] = Field(None, min_length=1)
    job_title: Optional[str] = Field(None, min_length=1)


class AssetCreate(BaseModel):
    serial_number: str = Field(..., min_length=1)
    tag_no: str = Field(..., min_length=1)
    category: AssetCategory
    company_id: str = Field(..., min_length=1)
    brand: str = Field(..., min_length=1)
    model: str = Field(..., min_length=1)
    purchase_date: date
    asset_value: float = Field(0, ge=0)
    photo_url: Optional[str] = None


class AssetUpdate(BaseModel):
    # history is derived by the data layer and cannot be written directly
    serial_number: Optional[str] = Field(None, min_length=1)
    tag_no: Optional[str] = Field(None, min_length=1)
    category: Optional[AssetCategory] = None
    company_id: Optional[str] = Field(None, min_length=1)
    brand: Optional[str] = Field(None, min_length=1)
    model: Optional[str] = Field(None, min_length=1)
    purchase_date: Optional[date] = None
    asset_value: Optional[float] = Field(None, ge=0)
    status: Optional[AssetStatus] = None
    assigned_to: Optional[str] = None
    photo_url: Optional[str] = None
    notes: Optional[str] = Field(None, description="Recorded on the history entry, not on the asset")
