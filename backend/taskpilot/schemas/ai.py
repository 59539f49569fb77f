"""
TaskPilot Backend - AI Command Schemas
=======================================

What:  Classification and execution results of natural-language task commands.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from taskpilot.schemas.base import CAMEL_CONFIG


class CommandType(str, Enum):
    CREATE_TASK = "CreateTask"
    LIST_TASKS = "ListTasks"
    CHANGE_TASK_STATUS = "ChangeTaskStatus"
    DELETE_TASK = "DeleteTask"
    ANALYZE_PROGRESS = "AnalyzeProgress"
    GREETING = "Greeting"
    UNKNOWN = "Unknown"

    @classmethod
    def parse(cls, value: Any) -> "CommandType":
        for member in cls:
            if str(value).strip().lower() == member.value.lower():
                return member
        return cls.UNKNOWN


class CommandAnalysis(BaseModel):
    """What the LLM understood from the prompt."""

    command_type: CommandType = CommandType.UNKNOWN
    parameters: Dict[str, Any] = Field(default_factory=dict)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reply: Optional[str] = None

    model_config = CAMEL_CONFIG


class CommandExecutionResult(BaseModel):
    success: bool
    message: str
    command: CommandType = CommandType.UNKNOWN
    data: Optional[Any] = None
    ai_response: Optional[str] = None
    errors: List[str] = Field(default_factory=list)

    model_config = CAMEL_CONFIG
