"""Data models for squad ledger."""

from dataclasses import dataclass, field
from datetime import datetime

PROJECT_MODES = ("local", "github", "hybrid")
PROJECT_STATUSES = ("planning", "active", "paused", "review", "completed", "archived")

TASK_STATUSES = ("backlog", "todo", "in_progress", "review", "blocked", "done", "archived")

ARTIFACT_STATUSES = ("draft", "pending", "approved", "rejected", "superseded")
ARTIFACT_TYPES = ("code", "document", "diagram", "config", "test", "asset", "data", "other")

RELATIONSHIP_TYPES = (
    "delegation",
    "collaboration",
    "review",
    "escalation",
    "consultation",
    "dependency",
    "supervision",
)
CONDITION_TYPES = ("task_status", "time_elapsed", "approval_required", "artifact_exists", "custom")

INTERACTION_TYPES = (
    "task_assign",
    "task_complete",
    "request_input",
    "provide_input",
    "request_review",
    "approve",
    "reject",
    "escalate",
    "consult",
    "notify",
    "handoff",
    "progress_update",
    "error_report",
    "user_intervention",
)
INTERACTION_STATUSES = ("pending", "in_progress", "completed", "failed", "cancelled", "timeout")
TERMINAL_INTERACTION_STATUSES = frozenset({"completed", "failed", "cancelled", "timeout"})

RESPONSE_STATUSES = ("success", "failure", "partial")
INTERVENTION_TYPES = ("guidance", "override", "approval", "rejection", "cancel")
INTERVENTION_URGENCIES = ("suggestion", "requirement", "critical")


@dataclass
class Project:
    id: str
    slug: str
    name: str
    description: str = ""
    mode: str = "local"
    repo: str | None = None
    folder: str | None = None
    status: str = "planning"
    token_budget: int | None = None
    tokens_used: int = 0
    cost_budget_cents: int | None = None
    cost_spent_cents: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class SubTask:
    id: int
    task_id: str
    title: str
    completed: bool = False
    completed_at: datetime | None = None


@dataclass
class Task:
    id: str
    project_id: str
    title: str
    description: str = ""
    status: str = "backlog"
    priority: int = 3
    workflow_id: str | None = None
    assigned_agent_id: str | None = None
    assigned_role_id: str | None = None
    attempts: int = 0
    max_attempts: int = 3
    last_error: str | None = None
    estimated_duration_minutes: int | None = None
    actual_duration_minutes: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    dependencies: list[str] = field(default_factory=list)
    blocks: list[str] = field(default_factory=list)
    artifact_ids: list[str] = field(default_factory=list)
    subtasks: list[SubTask] = field(default_factory=list)


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


@dataclass
class Artifact:
    id: str
    project_id: str
    task_id: str
    creator_agent_id: str
    filename: str
    type: str = "other"
    workflow_id: str | None = None
    creator_role_id: str | None = None
    path: str | None = None
    mime_type: str | None = None
    content: str | None = None
    content_hash: str | None = None
    size_bytes: int = 0
    version: int = 1
    status: str = "draft"
    review_comments: str | None = None
    reviewed_by: str | None = None
    reviewed_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class RelationshipCondition:
    type: str
    value: str | int | float | bool
    description: str | None = None


@dataclass
class RelationshipMetrics:
    total_interactions: int = 0
    successful_interactions: int = 0
    failed_interactions: int = 0
    avg_response_time: float = 0.0
    # Outcomes that reported a response time; the sample size behind the average.
    timed_interactions: int = 0
    last_interaction_at: datetime | None = None

    @property
    def success_rate(self) -> float | None:
        if not self.total_interactions:
            return None
        return self.successful_interactions / self.total_interactions


@dataclass
class RelationshipEdge:
    id: str
    source_agent_id: str
    target_agent_id: str
    type: str
    authority_delta: int = 0
    bidirectional: bool = False
    auto_approval: bool = True
    max_interactions_per_workflow: int | None = None
    priority: int = 0
    description: str | None = None
    conditions: list[RelationshipCondition] = field(default_factory=list)
    metrics: RelationshipMetrics = field(default_factory=RelationshipMetrics)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class InteractionResponse:
    message: str
    status: str = "success"
    artifacts: list[str] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)
    timestamp: datetime | None = None


@dataclass
class InteractionError:
    code: str
    message: str
    recoverable: bool = False


@dataclass
class UserIntervention:
    type: str
    message: str
    urgency: str = "suggestion"
    paused_execution: bool = False
    timestamp: datetime | None = None


@dataclass
class TokenUsage:
    input: int = 0
    output: int = 0
    total: int = 0


@dataclass
class Interaction:
    id: str
    workflow_id: str
    initiator_agent_id: str
    target_agent_id: str
    interaction_type: str
    message: str
    status: str = "pending"
    priority: int = 3
    task_id: str | None = None
    relationship_id: str | None = None
    parent_interaction_id: str | None = None
    thinking: str | None = None
    response: InteractionResponse | None = None
    error: InteractionError | None = None
    user_intervention: UserIntervention | None = None
    token_usage: TokenUsage | None = None
    duration_ms: int | None = None
    retry_count: int = 0
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass
class InteractionStats:
    total: int = 0
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0
    avg_duration_ms: float = 0.0
    total_tokens: int = 0


@dataclass
class ProjectStats:
    total_tasks: int = 0
    completed_tasks: int = 0
    in_progress_tasks: int = 0
    blocked_tasks: int = 0
    total_artifacts: int = 0
    approved_artifacts: int = 0
    total_tokens_used: int = 0
    total_cost_cents: int = 0
    avg_task_duration_minutes: float = 0.0
    completion_percentage: int = 0


@dataclass
class AgentStats:
    agent_id: str
    initiated: int = 0
    received: int = 0
    completed: int = 0
    failed: int = 0
    avg_duration_ms: float = 0.0
