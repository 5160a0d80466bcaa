# opsconsole/modules/tasks/executor.py

import json
from typing import Any, Callable, Dict, Protocol

from loguru import logger

from .models import FAILED_RESULT_TYPES
from .services import TaskService


class ToolCaller(Protocol):
    async def call_tool(self, name: str, args: Dict[str, Any]) -> Dict[str, Any]: ...


RunnerFactory = Callable[[str], ToolCaller]

PLAN_FAILED_MESSAGE = "One or more task steps failed or were blocked by policy."


class TaskExecutor:
    """Walks a task's stored execution plan, one tool call per step, logging as it goes."""

    def __init__(self, task_service: TaskService, runner_factory: RunnerFactory):
        self.task_service = task_service
        self.runner_factory = runner_factory

    async def run(self, task_id: str) -> Dict[str, Any]:
        log = logger.bind(service="TaskExecutor", task_id=task_id)
        task = await self.task_service.task_repo.get_by_id(task_id)
        if task is None or task.status == "cancelled":
            log.info("Task missing or cancelled; nothing to run.")
            return {"status": "skipped"}

        run = await self.task_service.start_run(task)
        log = log.bind(run_id=run.id)
        log.info(f"Run started for '{task.title}' with {len(task.execution_plan)} planned step(s).")

        try:
            runner = self.runner_factory(task.user_id)
            results: Dict[str, Any] = {}
            has_failures = False

            for step_def in task.execution_plan:
                if not isinstance(step_def, dict):
                    continue
                step_number = _as_int(step_def.get("step"))
                tool = str(step_def.get("tool") or "")
                tool_input = step_def.get("tool_input")
                if not isinstance(tool_input, dict):
                    tool_input = {}
                action = str(step_def.get("action") or "Execute planned step")

                await self.task_service.log_step(task, run, {
                    "step": step_number,
                    "status": "running",
                    "thought": f"THOUGHT: Starting step {step_number}.",
                    "action": f"ACTION: {action}",
                    "tool_used": tool or None,
                    "tool_input": tool_input or None,
                })

                if tool:
                    result = await runner.call_tool(tool, tool_input)
                    results[str(step_number)] = result
                    failed = str(result.get("type", "unknown")) in FAILED_RESULT_TYPES
                    has_failures = has_failures or failed
                    await self.task_service.log_step(task, run, {
                        "step": step_number,
                        "status": "failed" if failed else "completed",
                        "observation": "OBSERVATION: " + json.dumps(result, default=str, ensure_ascii=False),
                        "tool_used": tool,
                        "tool_input": tool_input,
                        "tool_output": result,
                    })
                    if failed:
                        log.warning(f"Step {step_number} ({tool}) returned {result.get('type')}.")
                    continue

                results[str(step_number)] = {
                    "type": "note",
                    "message": str(step_def.get("action") or "Step completed without a tool."),
                }
                await self.task_service.log_step(task, run, {
                    "step": step_number,
                    "status": "completed",
                    "observation": "OBSERVATION: Step completed without tool invocation.",
                })

            if has_failures:
                await self.task_service.fail_run(task, run, PLAN_FAILED_MESSAGE)
                log.warning("Run failed: at least one step failed.")
                return {"status": "failed", "run_id": run.id}

            summary = (task.expected_output or "Task completed.").strip()
            await self.task_service.complete_run(task, run, results, summary)
            log.success("Run completed.")
            return {"status": "completed", "run_id": run.id}
        except Exception as e:
            log.exception(f"Unexpected error while running task: {e}")
            await self.task_service.log_step(task, run, {
                "step": 999,
                "status": "failed",
                "observation": f"OBSERVATION: {e}",
            })
            await self.task_service.fail_run(task, run, str(e))
            raise


def _as_int(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0
