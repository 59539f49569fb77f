"""
TaskPilot Backend - AI Command Service
=======================================

What:  Turns a natural-language request ("add a high priority task to fix
       the login bug by Friday") into a TaskService call.
How:   1. Ask the LLM to classify the prompt into a CommandType and pull the
          parameters out as JSON (one round trip).
       2. Validate the parameters with the regular task schemas.
       3. Execute through the injected TaskService, as the calling user.
Who:   Exposed under /services/AiCommandService/ as ExecuteCommandAsync,
       AnalyzeCommandAsync, ValidateCommandAsync and GetCommandSuggestionsAsync
       (all PROTECTED). Suggestions are a fixed list and never call the LLM.

Failure policy:
    LLM outages and unusable model output produce a CommandExecutionResult
    with success=False; they are not faults. Ownership violations raised
    by TaskService (AccessDeniedError) propagate and become 403.
"""

import json
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from taskpilot.dispatch import CallerIdentity, expose
from taskpilot.dispatch.binder import format_validation_errors
from taskpilot.exceptions import CircuitBreakerOpenError, LLMServiceError
from taskpilot.schemas.ai import CommandAnalysis, CommandExecutionResult, CommandType
from taskpilot.schemas.task import TaskCreate
from taskpilot.services.gemini_service import gemini_service
from taskpilot.services.llm_base import LLMService
from taskpilot.services.task_service import TaskService

logger = logging.getLogger(__name__)

SYSTEM_INSTRUCTION = """You are the command interpreter of a task management system.
Classify the user's request and extract its parameters.

Respond with ONE JSON object and nothing else:
{
  "commandType": "CreateTask | ListTasks | ChangeTaskStatus | DeleteTask | AnalyzeProgress | Greeting | Unknown",
  "confidence": 0.0-1.0,
  "reply": "one short friendly sentence for the user",
  "parameters": {
    "title": "task title (CreateTask)",
    "description": "optional description",
    "priority": "Low | Medium | High | Critical",
    "taskType": "Bug | Story | Feature | Task",
    "assignee": "person name if mentioned",
    "projectName": "project if mentioned",
    "category": "category if mentioned",
    "estimatedHours": 0,
    "dueDate": "YYYY-MM-DD",
    "tags": "comma,separated",
    "taskId": 0,
    "status": "Pending | In Progress | Completed | Cancelled | On Hold | all"
  }
}
Omit parameters that the user did not mention."""

STATUS_ALIASES = {
    "pending": "Pending",
    "todo": "Pending",
    "open": "Pending",
    "in progress": "In Progress",
    "in-progress": "In Progress",
    "started": "In Progress",
    "completed": "Completed",
    "complete": "Completed",
    "done": "Completed",
    "cancelled": "Cancelled",
    "canceled": "Cancelled",
    "on hold": "On Hold",
    "blocked": "On Hold",
}

COMMAND_SUGGESTIONS = (
    "Create a new task called 'Fix login bug'",
    "Add a high priority task to review the Q3 report by Friday",
    "List all my tasks",
    "Show my pending tasks",
    "Mark task 5 as completed",
    "Set task 3 to in progress",
    "Delete task 7",
    "Analyze my progress",
)

_JSON_OBJECT = re.compile(r"\{.*\}", re.DOTALL)


def extract_json(text: str) -> Dict[str, Any]:
    """
    Pulls the first JSON object out of a model reply, tolerating code fences
    and chatter around it. Returns {} when nothing parseable is found.
    """
    match = _JSON_OBJECT.search(text or "")
    if not match:
        return {}
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


def normalize_status(value: Any) -> Optional[str]:
    if value is None:
        return None
    return STATUS_ALIASES.get(str(value).strip().lower())


def _task_id(parameters: Dict[str, Any]) -> Optional[int]:
    raw = parameters.get("taskId", parameters.get("task_id"))
    try:
        return int(str(raw).lstrip("#")) if raw is not None else None
    except ValueError:
        return None


class AiCommandService:
    def __init__(self, llm: LLMService):
        self.llm = llm

    @expose("AnalyzeCommandAsync")
    async def analyze_command(self, prompt: str) -> CommandAnalysis:
        """Classification only; nothing is executed."""
        reply = await self.llm.complete(prompt, system_instruction=SYSTEM_INSTRUCTION)
        payload = extract_json(reply)
        if not payload:
            logger.warning("AI reply contained no JSON object (%d chars)", len(reply))
            return CommandAnalysis(reply=reply or None)

        confidence = payload.get("confidence", 0.0)
        try:
            confidence = min(max(float(confidence), 0.0), 1.0)
        except (TypeError, ValueError):
            confidence = 0.0
        parameters = payload.get("parameters")
        return CommandAnalysis(
            command_type=CommandType.parse(payload.get("commandType", payload.get("type"))),
            parameters=parameters if isinstance(parameters, dict) else {},
            confidence=confidence,
            reply=payload.get("reply"),
        )

    @expose("ValidateCommandAsync")
    async def validate_command(self, prompt: str) -> bool:
        """True when the prompt maps to a known command. LLM outages count as False."""
        if not prompt.strip():
            return False
        try:
            analysis = await self.analyze_command(prompt.strip())
        except (LLMServiceError, CircuitBreakerOpenError) as e:
            logger.warning("AI command validation unavailable: %s", e.message)
            return False
        return analysis.command_type is not CommandType.UNKNOWN

    @expose("GetCommandSuggestionsAsync")
    async def get_command_suggestions(self, partial_prompt: str = "") -> List[str]:
        partial = partial_prompt.strip().lower()
        if not partial:
            return list(COMMAND_SUGGESTIONS)
        return [s for s in COMMAND_SUGGESTIONS if partial in s.lower()]

    @expose("ExecuteCommandAsync")
    async def execute_command(
        self,
        prompt: str,
        caller: CallerIdentity,
        db: AsyncSession,
        tasks: TaskService,
    ) -> CommandExecutionResult:
        prompt = prompt.strip()
        if not prompt:
            return CommandExecutionResult(success=False, message="Please tell me what you want to do.")

        logger.info("Executing AI command for user %s (%d chars)", caller.user_id, len(prompt))
        try:
            analysis = await self.analyze_command(prompt)
        except (LLMServiceError, CircuitBreakerOpenError) as e:
            logger.warning("AI command interpretation unavailable: %s", e.message)
            return CommandExecutionResult(
                success=False,
                message=e.message,
                errors=[type(e).__name__],
            )

        handler = {
            CommandType.CREATE_TASK: self._create_task,
            CommandType.LIST_TASKS: self._list_tasks,
            CommandType.CHANGE_TASK_STATUS: self._change_status,
            CommandType.DELETE_TASK: self._delete_task,
            CommandType.ANALYZE_PROGRESS: self._analyze_progress,
        }.get(analysis.command_type)

        if analysis.command_type is CommandType.GREETING:
            return CommandExecutionResult(
                success=True,
                command=CommandType.GREETING,
                message=analysis.reply or "Hi! I can create, list, update and delete your tasks.",
                ai_response=analysis.reply,
            )
        if handler is None:
            return CommandExecutionResult(
                success=False,
                command=CommandType.UNKNOWN,
                message="I couldn't work out what you want to do. Try 'create a task to ...'.",
                ai_response=analysis.reply,
            )

        result = await handler(analysis.parameters, caller, db, tasks)
        result.command = analysis.command_type
        result.ai_response = analysis.reply
        return result

    # ── Command handlers ──────────────────────────────────────────────────

    @staticmethod
    async def _create_task(
        parameters: Dict[str, Any], caller: CallerIdentity, db: AsyncSession, tasks: TaskService
    ) -> CommandExecutionResult:
        fields = {
            "title": parameters.get("title"),
            "description": parameters.get("description"),
            "priority": parameters.get("priority") or "Medium",
            "task_type": parameters.get("taskType"),
            "assigned_to_name": parameters.get("assignee"),
            "project_name": parameters.get("projectName"),
            "category": parameters.get("category"),
            "tags": parameters.get("tags"),
            "estimated_hours": parameters.get("estimatedHours") or None,
        }
        due = parameters.get("dueDate")
        if due:
            try:
                fields["due_date"] = datetime.fromisoformat(str(due))
            except ValueError:
                logger.info("Ignoring unparseable due date from AI: %r", due)
        try:
            payload = TaskCreate.model_validate({k: v for k, v in fields.items() if v is not None})
        except PydanticValidationError as e:
            return CommandExecutionResult(
                success=False,
                message="I understood you want a new task, but some details were invalid.",
                errors=format_validation_errors(e),
            )

        created = await tasks.create_task(payload, caller, db)
        return CommandExecutionResult(
            success=True,
            message=f"Created task #{created.id}: {created.title}",
            data=created,
        )

    @staticmethod
    async def _list_tasks(
        parameters: Dict[str, Any], caller: CallerIdentity, db: AsyncSession, tasks: TaskService
    ) -> CommandExecutionResult:
        status = normalize_status(parameters.get("status"))
        priority = parameters.get("priority")
        if priority not in ("Low", "Medium", "High", "Critical"):
            priority = None
        found = await tasks.get_tasks_with_filters(
            caller,
            db,
            status=status,
            priority=priority,
            assigned_to_name=parameters.get("assignee") or None,
        )
        return CommandExecutionResult(
            success=True,
            message=f"Found {len(found)} task(s).",
            data=found,
        )

    @staticmethod
    async def _change_status(
        parameters: Dict[str, Any], caller: CallerIdentity, db: AsyncSession, tasks: TaskService
    ) -> CommandExecutionResult:
        task_id = _task_id(parameters)
        status = normalize_status(parameters.get("status"))
        if task_id is None or status is None:
            return CommandExecutionResult(
                success=False,
                message="Tell me the task number and the new status.",
                errors=["taskId and status are required"],
            )
        updated = await tasks.update_task_status(task_id, status, caller, db)
        if not updated:
            return CommandExecutionResult(success=False, message=f"Task #{task_id} was not found.")
        return CommandExecutionResult(success=True, message=f"Task #{task_id} is now {status}.")

    @staticmethod
    async def _delete_task(
        parameters: Dict[str, Any], caller: CallerIdentity, db: AsyncSession, tasks: TaskService
    ) -> CommandExecutionResult:
        task_id = _task_id(parameters)
        if task_id is None:
            return CommandExecutionResult(
                success=False,
                message="Which task should I delete? Give me its number.",
                errors=["taskId is required"],
            )
        deleted = await tasks.delete_task(task_id, caller, db)
        if not deleted:
            return CommandExecutionResult(success=False, message=f"Task #{task_id} was not found.")
        return CommandExecutionResult(success=True, message=f"Deleted task #{task_id}.")

    @staticmethod
    async def _analyze_progress(
        parameters: Dict[str, Any], caller: CallerIdentity, db: AsyncSession, tasks: TaskService
    ) -> CommandExecutionResult:
        stats = await tasks.get_my_task_stats(caller, db)
        message = (
            f"You have {stats.total_tasks} task(s): {stats.completed_tasks} completed, "
            f"{stats.pending_tasks} open, {stats.overdue_tasks} overdue. "
            f"Average progress is {stats.average_progress:.0f}%."
        )
        return CommandExecutionResult(success=True, message=message, data=stats)


ai_command_service = AiCommandService(gemini_service)
