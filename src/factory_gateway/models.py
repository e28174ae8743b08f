from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ImportStatus(str, Enum):
    PENDING = "pending"
    IMPORTING = "importing"
    UPDATING = "updating"
    COMPLETED = "completed"
    FAILED = "failed"


class WorkflowStatus(str, Enum):
    STARTED = "started"
    FAILED = "failed"
    SKIPPED = "skipped"


class GovernanceAction(str, Enum):
    APPROVE = "approve"
    SKIP = "skip"
    REJECT = "reject"


class GovernanceScope(str, Enum):
    GLOBAL = "global"
    LOCAL = "local"


class ApiModel(BaseModel):
    """Accepts and emits the dashboard's camelCase field names."""

    model_config = ConfigDict(populate_by_name=True)


class InputFile(ApiModel):
    key: str
    name: str
    size: int = 0
    content_type: str = Field(alias="contentType")


class StartProjectRequest(ApiModel):
    project_name: str = Field(alias="projectName")
    project_id: Optional[str] = Field(default=None, alias="projectId")
    description: Optional[str] = None
    input_files: List[InputFile] = Field(default_factory=list, alias="inputFiles")


class StartProjectResponse(ApiModel):
    success: bool = True
    project_id: str = Field(alias="projectId")
    project_name: str = Field(alias="projectName")
    session_id: str = Field(alias="sessionId")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    workflow_status: WorkflowStatus = Field(alias="workflowStatus")
    execution_id: Optional[str] = Field(default=None, alias="executionId")
    workflow_error: Optional[str] = Field(default=None, alias="workflowError")
    message: str


class TechDecision(BaseModel):
    tech_id: str
    action: GovernanceAction
    scope: Optional[GovernanceScope] = None
    selected_alternative: Optional[str] = None
    notes: Optional[str] = None


class GovernanceSubmission(BaseModel):
    scavenging_id: str
    project_id: str
    decisions: List[TechDecision]
    submitted_at: datetime


class GovernanceResult(BaseModel):
    success: bool
    message: str
    scavenging_id: str
    decisions_count: int
    approved_count: int
    n8n_response: Any = None


class PresignedUrlRequest(ApiModel):
    project_id: str = Field(alias="projectId")
    filename: str
    content_type: Optional[str] = Field(default=None, alias="contentType")


class PresignedUrlResponse(ApiModel):
    upload_url: str = Field(alias="uploadUrl")
    key: str
    expires_in: int = Field(alias="expiresIn")
    content_type: str = Field(alias="contentType")


class ChatRequest(ApiModel):
    message: str
    project_id: str = Field(alias="projectId")
    session_id: Optional[str] = Field(default=None, alias="sessionId")


class ChatResponse(ApiModel):
    message: str
    session_id: str = Field(alias="sessionId")
    execution_id: Optional[str] = Field(default=None, alias="executionId")


class WorkflowImport(BaseModel):
    workflow_file: str
    workflow_name: Optional[str] = None
    n8n_workflow_id: Optional[str] = None
    import_status: ImportStatus
    last_error: Optional[str] = None
    last_import_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class WorkflowImportList(BaseModel):
    workflows: List[WorkflowImport]
    counts: Dict[str, int]
