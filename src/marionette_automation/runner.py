from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Mapping, Optional, Sequence
import logging
import subprocess

from . import templating
from .executors import CommandResult, Executor, executor_for
from .operations import OPERATION_REGISTRY, Operation
from .operations.base import shorten
from .operations.exec import normalize_command, summarize_output
from .types import HostConfig, IdempotencyGuard, TaskOutcome, TaskResult, TaskSpec
from .variables import VariableContext

logger = logging.getLogger(__name__)

ExecutorFactory = Callable[..., Executor]
ProgressCallback = Callable[[HostConfig, TaskSpec], None]


class TaskRunner:
    """Applies an ordered task list to one host.

    Tasks run strictly in declared order. A failed task aborts the rest of the
    list unless it is marked ``continue_on_error``; the tasks that never ran
    are reported as ``aborted``.
    """

    def __init__(
        self,
        host: HostConfig,
        context: VariableContext,
        *,
        dry_run: bool = False,
        executor_factory: ExecutorFactory = executor_for,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        self.host = host
        self.context = context
        self.dry_run = dry_run
        self.executor_factory = executor_factory
        self.progress_callback = progress_callback

    def run(self, tasks: Sequence[TaskSpec]) -> list[TaskResult]:
        results: list[TaskResult] = []
        aborted_by: Optional[str] = None
        for task in tasks:
            if aborted_by is not None:
                results.append(self._result(task, TaskOutcome.ABORTED, f"not run: task '{aborted_by}' failed"))
                continue
            task_results = self._run_task(task)
            results.extend(task_results)
            failed = next((r for r in task_results if r.failed and not r.ignored), None)
            if failed is not None:
                aborted_by = failed.task
        return results

    def _run_task(self, task: TaskSpec) -> list[TaskResult]:
        if self.progress_callback:
            self.progress_callback(self.host, task)
        result = self._converge(task)
        logger.debug("task=%s host=%s outcome=%s", task.name, self.host.name, result.outcome.value)
        results = [result]
        if result.changed and task.on_success:
            results.extend(self.run(task.on_success))
        elif result.failed and task.on_failure:
            results.extend(self.run(task.on_failure))
        return results

    def _converge(self, task: TaskSpec) -> TaskResult:
        resource: Optional[str] = None
        try:
            ctx = self.context.for_task(task)
            if task.when and not templating.evaluate(task.when, ctx):
                return self._result(task, TaskOutcome.SKIPPED, "condition false")

            params = templating.render(task.params, ctx)
            operation: Operation = OPERATION_REGISTRY[task.kind](params, context=ctx)
            resource = self._resource(operation)
            executor = self.executor_factory(
                self.host, dry_run=self.dry_run, timeout=task.timeout, redact=self.context.redact
            )

            if not task.guard.is_empty():
                met, detail = self._guard_met(task.guard, ctx, executor, params)
                if met:
                    return self._result(task, TaskOutcome.UNCHANGED, detail, resource)

            if operation.inspectable:
                probe = operation.check(self.host, executor)
                if probe.converged:
                    return self._result(task, TaskOutcome.UNCHANGED, probe.details, resource)
                if self.dry_run:
                    return self._result(task, TaskOutcome.CHANGED, f"would change ({probe.details})", resource)
            elif self.dry_run:
                return self._result(task, TaskOutcome.CHANGED, "would run", resource)

            outcome = operation.apply(self.host, executor)
        except subprocess.TimeoutExpired as exc:
            return self._failure(task, f"timed out after {exc.timeout:g}s", resource)
        except subprocess.CalledProcessError as exc:
            message = summarize_output(CommandResult([], exc.stdout or "", exc.stderr or "", exc.returncode))
            detail = f"rc={exc.returncode}: {message}" if message else f"rc={exc.returncode}"
            return self._failure(task, detail, resource)
        except Exception as exc:  # noqa: BLE001
            logger.error(
                "task=%s host=%s failed: %s", task.name, self.host.name, self.context.redact(str(exc)), exc_info=True
            )
            return self._failure(task, str(exc) or type(exc).__name__, resource)

        if outcome.failed:
            return self._failure(task, outcome.details, resource)
        status = TaskOutcome.CHANGED if outcome.changed else TaskOutcome.UNCHANGED
        return self._result(task, status, outcome.details, resource)

    def _guard_met(
        self,
        guard: IdempotencyGuard,
        ctx: Mapping[str, Any],
        executor: Executor,
        params: Mapping[str, Any],
    ) -> tuple[bool, str]:
        cwd = Path(str(params["cwd"])).expanduser() if params.get("cwd") else None
        if guard.creates:
            path = self._guard_path(templating.render(guard.creates, ctx), cwd)
            if executor.path_exists(path):
                return True, f"skipped (creates {path})"
        if guard.removes:
            path = self._guard_path(templating.render(guard.removes, ctx), cwd)
            if not executor.path_exists(path):
                return True, f"skipped (removes {path} absent)"
        if guard.only_if is not None:
            rc = self._guard_command(guard.only_if, ctx, executor, cwd)
            if rc != 0:
                return True, f"skipped (only_if rc={rc})"
        if guard.unless is not None:
            rc = self._guard_command(guard.unless, ctx, executor, cwd)
            if rc == 0:
                return True, f"skipped (unless rc={rc})"
        return False, "guard unmet"

    @staticmethod
    def _guard_path(value: Any, cwd: Optional[Path]) -> Path:
        path = Path(str(value)).expanduser()
        if path.is_absolute() or cwd is None:
            return path
        return cwd / path

    @staticmethod
    def _guard_command(command: Any, ctx: Mapping[str, Any], executor: Executor, cwd: Optional[Path]) -> int:
        rendered = normalize_command(templating.render(command, ctx))
        return executor.run(rendered, check=False, mutable=False, cwd=cwd).returncode

    def _resource(self, operation: Operation) -> Optional[str]:
        shown = operation.resource()
        if not shown:
            return None
        return shorten(self.context.redact(shown), operation.resource_width)

    def _failure(self, task: TaskSpec, details: str, resource: Optional[str]) -> TaskResult:
        result = self._result(task, TaskOutcome.FAILED, details, resource)
        if task.continue_on_error:
            result.ignored = True
            logger.warning(
                "task=%s host=%s failed, continuing: %s", task.name, self.host.name, result.details
            )
        return result

    def _result(
        self, task: TaskSpec, outcome: TaskOutcome, details: str, resource: Optional[str] = None
    ) -> TaskResult:
        return TaskResult(
            host=self.host.name,
            task=task.name,
            kind=task.kind.value,
            outcome=outcome,
            details=self.context.redact(details),
            resource=self.context.redact(resource) if resource else None,
        )
