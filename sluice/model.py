import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

STAGE_ENTRY = "stage_entry"
AUTOMATIC = "automatic"


def utcnow() -> datetime.datetime:
    return datetime.datetime.now(datetime.timezone.utc)


class Operator(str, Enum):
    EQ = "="
    NE = "!="
    GT = ">"
    GE = ">="
    LT = "<"
    LE = "<="
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    IN = "in"
    NOT_IN = "not_in"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"


_OPERATOR_ALIASES = {"==": "=", "<>": "!="}


class Combinator(str, Enum):
    ALL = "all"
    ANY = "any"


class ConditionLeaf(BaseModel):
    """Compare the value found at a dotted ``field`` path against ``value``."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["leaf"] = "leaf"
    field: str
    operator: Operator
    value: Any = None

    @field_validator("operator", mode="before")
    @classmethod
    def _alias_operator(cls, v: Any) -> Any:
        if isinstance(v, str):
            return _OPERATOR_ALIASES.get(v, v)
        return v


class ConditionGroup(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["group"] = "group"
    combinator: Combinator = Combinator.ALL
    children: tuple["ConditionTree", ...] = ()

    @field_validator("combinator", mode="before")
    @classmethod
    def _lower_combinator(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.lower()
        return v


ConditionTree = Annotated[
    Union[ConditionLeaf, ConditionGroup], Field(discriminator="kind")
]

ConditionGroup.model_rebuild()


class NotificationTrigger(BaseModel):
    model_config = ConfigDict(frozen=True)

    event: str = STAGE_ENTRY
    template: str
    channels: tuple[str, ...] = ()


class Stage(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    description: str = ""
    # Display/ordering hint only; reachability comes from transitions.
    sequence: int = 0
    required_documents: frozenset[str] = frozenset()
    required_actions: frozenset[str] = frozenset()
    notification_triggers: tuple[NotificationTrigger, ...] = ()
    assigned_role_id: str | None = None

    @model_validator(mode="before")
    @classmethod
    def _default_id(cls, data: Any) -> Any:
        if isinstance(data, dict) and not data.get("id") and data.get("name"):
            return {**data, "id": data["name"]}
        return data

    def triggers_for(self, event: str) -> list[NotificationTrigger]:
        return [t for t in self.notification_triggers if t.event == event]


class Transition(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: str
    target: str
    name: str
    description: str = ""
    is_automatic: bool = False
    condition: ConditionTree | None = None
    # Only consulted for manual transitions.
    required_permissions: frozenset[str] = frozenset()


class WorkflowTemplate(BaseModel):
    """A published workflow definition.

    Templates are immutable: editing one produces a new version via
    :meth:`new_version`, and running applications keep pointing at the
    ``(id, version)`` pair they were started with.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    version: int = Field(default=1, ge=1)
    name: str
    description: str = ""
    application_type: str
    stages: tuple[Stage, ...]
    transitions: tuple[Transition, ...] = ()
    is_active: bool = False
    start_stage_id: str | None = None

    @property
    def ref(self) -> tuple[str, int]:
        return (self.id, self.version)

    def resolve_start_stage_id(self) -> str | None:
        """Explicit ``start_stage_id`` if set, else the lowest-sequence stage."""
        if self.start_stage_id is not None:
            return self.start_stage_id
        if not self.stages:
            return None
        return min(self.stages, key=lambda s: s.sequence).id

    def new_version(self, **changes: Any) -> "WorkflowTemplate":
        data = self.model_dump()
        data.update(changes)
        data["version"] = self.version + 1
        data["is_active"] = False
        return WorkflowTemplate.model_validate(data)


class RetryPolicy(BaseModel):
    max_retries: int = Field(default=3, ge=0)
    backoff_strategy: Literal["exponential", "linear"] = "exponential"
    backoff_factor: float = 2
    backoff_max: datetime.timedelta = datetime.timedelta(seconds=60)
    backoff_min: datetime.timedelta = datetime.timedelta(seconds=1)

    def delay_for(self, retry_count: int) -> float:
        """Seconds to wait before retry number ``retry_count`` (1-based)."""
        if self.backoff_strategy == "exponential":
            return max(
                self.backoff_min.total_seconds(),
                min(
                    self.backoff_factor**retry_count,
                    self.backoff_max.total_seconds(),
                ),
            )
        return max(
            self.backoff_min.total_seconds(),
            min(
                self.backoff_factor * retry_count,
                self.backoff_max.total_seconds(),
            ),
        )


class HistoryInvariantError(RuntimeError):
    pass


class HistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    stage_id: str
    entered_at: datetime.datetime
    exited_at: datetime.datetime | None = None
    # None for the entry created when the workflow starts.
    transition_name: str | None = None
    # AUTOMATIC or the id of the actor who requested the transition.
    triggered_by: str


class ApplicationWorkflowState(BaseModel):
    model_config = ConfigDict(frozen=True)

    application_id: str
    template_id: str
    template_version: int
    current_stage_id: str
    entered_at: datetime.datetime
    history: tuple[HistoryEntry, ...]

    @property
    def template_ref(self) -> tuple[str, int]:
        return (self.template_id, self.template_version)

    def open_entries(self) -> list[HistoryEntry]:
        return [h for h in self.history if h.exited_at is None]

    def check_invariants(self) -> None:
        """Raise HistoryInvariantError unless the last history entry is the only open one."""
        open_entries = self.open_entries()
        if len(open_entries) != 1:
            raise HistoryInvariantError(
                f"Application {self.application_id} has {len(open_entries)} open "
                "history entries, expected exactly 1"
            )
        last = self.history[-1]
        if last.exited_at is not None or last.stage_id != self.current_stage_id:
            raise HistoryInvariantError(
                f"Application {self.application_id}: last history entry "
                f"({last.stage_id}) does not match current stage {self.current_stage_id}"
            )


class Lease(BaseModel):
    model_config = ConfigDict(frozen=True)

    application_id: str
    holder: str
    expires_at: datetime.datetime

    def is_live(self, now: datetime.datetime | None = None) -> bool:
        return self.expires_at > (now or utcnow())


class Rejection(BaseModel):
    msg: str = ""

    @property
    def kind(self) -> str:
        return type(self).__name__


class AlreadyExists(Rejection):
    pass


class LeaseHeld(Rejection):
    application_id: str
    holder: str | None = None
    expires_at: datetime.datetime | None = None


class Busy(Rejection):
    application_id: str


class LeaseNotHeld(Rejection):
    application_id: str


class WorkflowNotInitialized(Rejection):
    application_id: str


class NoSuchTransition(Rejection):
    stage_id: str
    transition_name: str


class PermissionDenied(Rejection):
    transition_name: str
    missing_permissions: frozenset[str] = frozenset()


class ConditionNotMet(Rejection):
    transition_name: str


class StaleTransition(Rejection):
    expected_stage_id: str
    actual_stage_id: str


class TransitionApplied(BaseModel):
    state: ApplicationWorkflowState
    transition: Transition
    notifications_submitted: int = 0


class NoActiveTemplate(Rejection):
    application_type: str
