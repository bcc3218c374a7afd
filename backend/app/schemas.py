from datetime import datetime
from typing import Optional, Any, Dict, Literal, List, Union
from pydantic import AliasChoices, BaseModel, ConfigDict, EmailStr, Field
from uuid import UUID


class UserCreate(BaseModel):
    email: EmailStr
    password: str
    full_name: Optional[str] = None


class UserOut(BaseModel):
    id: UUID
    email: EmailStr
    full_name: Optional[str]
    is_admin: bool = False
    is_active: bool = True
    model_config = ConfigDict(from_attributes=True)


class UserUpdate(BaseModel):
    full_name: Optional[str] = None


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class NotificationOut(BaseModel):
    id: UUID
    message: str
    category: Optional[str] = None
    is_read: bool = False
    meta: Dict[str, Any] = {}
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class DepartmentCreate(BaseModel):
    name: str
    description: Optional[str] = None


class DepartmentOut(DepartmentCreate):
    id: UUID
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class RoleCreate(BaseModel):
    name: str
    department_id: Optional[UUID] = None
    permissions: List[str] = []


class RoleUpdate(BaseModel):
    name: Optional[str] = None
    department_id: Optional[UUID] = None
    permissions: Optional[List[str]] = None


class RoleOut(RoleCreate):
    id: UUID
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class RoleMemberAdd(BaseModel):
    user_id: UUID


class RoleMemberOut(BaseModel):
    user_id: UUID
    role_id: UUID
    assigned_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class AuditActionCount(BaseModel):
    action: str
    count: int


class ProjectCreate(BaseModel):
    name: str
    description: Optional[str] = None
    account_name: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class ProjectUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    account_name: Optional[str] = None
    status: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class ProjectOut(ProjectCreate):
    id: UUID
    status: str
    created_by: Optional[UUID] = None
    completed_at: Optional[datetime] = None
    created_at: datetime
    model_config = ConfigDict(from_attributes=True)


class WorkflowTemplateCreate(BaseModel):
    name: str
    description: Optional[str] = None


class WorkflowTemplateUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None


class WorkflowTemplateOut(BaseModel):
    id: UUID
    name: str
    description: Optional[str] = None
    is_active: bool
    created_by: Optional[UUID] = None
    created_at: datetime
    updated_at: datetime
    model_config = ConfigDict(from_attributes=True)


class ConnectionConditionIn(BaseModel):
    label: Optional[str] = None
    condition_type: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("condition_type", "conditionType")
    )
    condition_value: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("condition_value", "conditionValue")
    )
    decision: Optional[Literal["approved", "rejected"]] = None
    source_handle: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("source_handle", "sourceHandle")
    )


class WorkflowNodeIn(BaseModel):
    key: str = Field(validation_alias=AliasChoices("key", "node_key", "nodeKey", "id"))
    type: Literal["start", "end", "role", "department", "approval", "conditional", "form", "sync"] = Field(
        validation_alias=AliasChoices("type", "node_type", "nodeType")
    )
    label: str = ""
    required_entity_id: Optional[UUID] = Field(
        default=None,
        validation_alias=AliasChoices("required_entity_id", "requiredEntityId", "entity_id", "entityId"),
    )
    settings: Dict[str, Any] = {}
    position_x: float = Field(default=0.0, validation_alias=AliasChoices("position_x", "positionX"))
    position_y: float = Field(default=0.0, validation_alias=AliasChoices("position_y", "positionY"))


class WorkflowConnectionIn(BaseModel):
    source: str = Field(validation_alias=AliasChoices("source", "from_node", "fromNode"))
    target: str = Field(validation_alias=AliasChoices("target", "to_node", "toNode"))
    condition: Optional[ConnectionConditionIn] = None


class WorkflowGraphIn(BaseModel):
    nodes: List[WorkflowNodeIn] = []
    connections: List[WorkflowConnectionIn] = []

    def node_dicts(self) -> List[Dict[str, Any]]:
        return [node.model_dump() for node in self.nodes]

    def connection_dicts(self) -> List[Dict[str, Any]]:
        return [conn.model_dump(exclude_none=True) for conn in self.connections]


class WorkflowNodeOut(BaseModel):
    id: UUID
    node_key: str
    node_type: str
    label: str
    required_entity_id: Optional[UUID] = None
    settings: Dict[str, Any] = {}
    position_x: Optional[float] = None
    position_y: Optional[float] = None
    model_config = ConfigDict(from_attributes=True)


class WorkflowConnectionOut(BaseModel):
    id: UUID
    from_node_id: UUID
    to_node_id: UUID
    condition: Optional[Dict[str, Any]] = None
    model_config = ConfigDict(from_attributes=True)


class WorkflowTemplateDetail(WorkflowTemplateOut):
    nodes: List[WorkflowNodeOut] = []
    connections: List[WorkflowConnectionOut] = []


class WorkflowGraphReplaceOut(BaseModel):
    nodes: List[WorkflowNodeOut]
    connection_count: int


class ValidationIssueOut(BaseModel):
    type: Literal["error", "warning"]
    code: str
    message: str
    node_id: Optional[str] = None
    node_key: Optional[str] = None
    node_label: Optional[str] = None


class ValidationResultOut(BaseModel):
    valid: bool
    errors: List[ValidationIssueOut] = []
    warnings: List[ValidationIssueOut] = []


class WorkflowStartRequest(BaseModel):
    template_id: UUID
    project_id: UUID


class WorkflowInstanceOut(BaseModel):
    id: UUID
    template_id: UUID
    project_id: UUID
    status: str
    current_node_id: Optional[UUID] = None
    has_parallel_paths: bool = False
    started_by: Optional[UUID] = None
    started_at: datetime
    completed_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class WorkflowActiveStepOut(BaseModel):
    id: UUID
    instance_id: UUID
    node_id: Optional[UUID] = None
    branch_id: str
    parent_branch_id: Optional[str] = None
    fork_group_id: Optional[str] = None
    status: str
    assigned_user_id: Optional[UUID] = None
    approvals: List[str] = []
    decision: Optional[str] = None
    activated_at: datetime
    completed_at: Optional[datetime] = None
    model_config = ConfigDict(from_attributes=True)


class WorkflowInstanceDetail(WorkflowInstanceOut):
    steps: List[WorkflowActiveStepOut] = []


class WorkflowHistoryOut(BaseModel):
    id: UUID
    from_node_id: Optional[UUID] = None
    to_node_id: Optional[UUID] = None
    handed_off_by: Optional[UUID] = None
    handed_off_to: Optional[UUID] = None
    decision: Optional[str] = None
    feedback: Optional[str] = None
    form_response_id: Optional[UUID] = None
    form_data: Optional[Dict[str, Any]] = None
    notes: Optional[str] = None
    out_of_order: bool = False
    handed_off_at: datetime
    model_config = ConfigDict(from_attributes=True)


class GraphNodeOut(BaseModel):
    id: str
    type: str
    label: str = ""
    key: Optional[str] = None
    required_entity_id: Optional[str] = None
    model_config = ConfigDict(from_attributes=True)


class WorkflowProgressRequest(BaseModel):
    active_step_id: Optional[UUID] = None
    decision: Optional[Literal["approved", "rejected"]] = None
    form_data: Optional[Dict[str, Any]] = None
    # one user for every new task step, or a node id/key -> user map for forks
    assignment: Optional[Union[UUID, Dict[str, UUID]]] = None
    feedback: Optional[str] = None
    form_response_id: Optional[UUID] = None
    notes: Optional[str] = None


class WorkflowHandoffRequest(BaseModel):
    to_node_id: UUID
    active_step_id: Optional[UUID] = None
    handed_off_to: Optional[UUID] = None
    form_response_id: Optional[UUID] = None
    notes: Optional[str] = None
    out_of_order: bool = False


class WorkflowProgressOut(BaseModel):
    instance: WorkflowInstanceOut
    next_nodes: List[GraphNodeOut] = []
    new_active_steps: List[WorkflowActiveStepOut] = []
    completed: bool = False
    model_config = ConfigDict(from_attributes=True)


class StepAssigneeUpdate(BaseModel):
    user_id: UUID


class NodeAssignmentCreate(BaseModel):
    node_id: UUID
    user_id: UUID


class NodeAssignmentOut(BaseModel):
    id: UUID
    instance_id: UUID
    node_id: UUID
    user_id: UUID
    assigned_by: Optional[UUID] = None
    assigned_at: datetime
    model_config = ConfigDict(from_attributes=True)
