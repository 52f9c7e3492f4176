import datetime as dt
from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import BudgetPeriod, ExpenseStatus, Role


class UserIn(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    role: Role = Role.user


class RoleChangeIn(BaseModel):
    role: Role


class TeamIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    manager_id: int


class TeamMemberIn(BaseModel):
    user_id: int


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = None
    color: Optional[str] = Field(default=None, pattern=r"^#[0-9A-Fa-f]{6}$")
    parent_id: Optional[int] = None


class CategoryUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = None
    color: Optional[str] = Field(default=None, pattern=r"^#[0-9A-Fa-f]{6}$")
    parent_id: Optional[int] = None


class ExpenseIn(BaseModel):
    category_id: int
    amount_cents: int
    description: str = Field(default="", max_length=1000)
    date: date
    team_id: Optional[int] = None
    receipt_url: Optional[str] = Field(default=None, max_length=500)
    tags: list[str] = Field(default_factory=list)


class ExpenseUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category_id: Optional[int] = None
    amount_cents: Optional[int] = None
    description: Optional[str] = Field(default=None, max_length=1000)
    date: Optional[dt.date] = None
    receipt_url: Optional[str] = Field(default=None, max_length=500)
    tags: Optional[list[str]] = None


class ExpenseDecisionIn(BaseModel):
    note: Optional[str] = Field(default=None, max_length=1000)


class ExpenseFilters(BaseModel):
    status: Optional[ExpenseStatus] = None
    category_id: Optional[int] = None
    owner_id: Optional[int] = None
    team_id: Optional[int] = None
    start: Optional[date] = None
    end: Optional[date] = None
    limit: int = Field(default=50, ge=1, le=500)
    offset: int = Field(default=0, ge=0)


class BudgetIn(BaseModel):
    category_id: Optional[int] = None
    amount_cents: int
    period: BudgetPeriod = BudgetPeriod.monthly
    start_date: date
    end_date: Optional[date] = None
    alert_threshold: Optional[int] = None


class BudgetUpdateIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount_cents: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    alert_threshold: Optional[int] = None
