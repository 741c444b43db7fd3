"""Operational issues reported against a ride."""

from datetime import datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field


class IssueType(str, Enum):
    CUSTOMER_COMPLAINT = "customer_complaint"
    DRIVER_ISSUE = "driver_issue"
    PAYMENT_DISPUTE = "payment_dispute"
    ROUTE_PROBLEM = "route_problem"
    OTHER = "other"


class IssueSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class IssueReport(BaseModel):
    """Caller-supplied description of a new issue."""

    type: IssueType
    description: str = Field(min_length=1)
    severity: IssueSeverity = IssueSeverity.MEDIUM


class Issue(BaseModel):
    issue_id: str = Field(default_factory=lambda: uuid4().hex)
    type: IssueType
    description: str
    severity: IssueSeverity = IssueSeverity.MEDIUM
    reported_by: str
    reported_at: datetime
    resolved: bool = False
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    resolution: str | None = None
