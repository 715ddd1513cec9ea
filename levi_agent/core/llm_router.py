"""Task-based model routing for the primary/escalation ladder."""

from dataclasses import dataclass
from enum import Enum

from levi_agent.core.config import Settings, get_settings


class TaskType(str, Enum):
    """Kinds of model work the agent routes."""

    CHAT = "chat"
    TOOL_USE = "tool_use"
    SUMMARIZE = "summarize"


@dataclass(frozen=True)
class ModelRoute:
    primary: str
    escalation: str


def route_to_model(
    task_type: TaskType | str,
    escalated: bool = False,
    settings: Settings | None = None,
    overrides: dict[TaskType, ModelRoute] | None = None,
) -> str:
    """
    Resolve the model id for a task.

    Args:
        task_type: The kind of work
        escalated: True for the backup (stronger) model
        settings: Settings supplying the default primary/escalation pair
        overrides: Optional per-task routes that replace the default pair

    Returns:
        OpenRouter model id

    Raises:
        ValueError: If task_type is not a known TaskType
    """
    task_type = TaskType(task_type)
    settings = settings or get_settings()

    route = (overrides or {}).get(task_type) or ModelRoute(
        primary=settings.LLM_PRIMARY_MODEL,
        escalation=settings.LLM_ESCALATION_MODEL,
    )
    return route.escalation if escalated else route.primary
