from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Iterable, Mapping, Optional
import logging
import uuid

from . import tags as tag_filter
from .audit import AuditLog
from .errors import CONFIG_ERRORS
from .executors import executor_for
from .inventory import Inventory
from .runner import ExecutorFactory, ProgressCallback, TaskRunner
from .types import HostConfig, RunResult, RunStatus, TaskResult, TaskSet
from .variables import VariableResolver

logger = logging.getLogger(__name__)


class RunCoordinator:
    """Drives one host through resolve, pre-flight, filter, execute and audit.

    Configuration errors are audited with status ``error`` and re-raised.
    Task errors are captured in the returned :class:`RunResult`.
    """

    def __init__(
        self,
        inventory: Inventory,
        resolver: VariableResolver,
        audit: Optional[AuditLog] = None,
        *,
        dry_run: bool = False,
        executor_factory: ExecutorFactory = executor_for,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        self.inventory = inventory
        self.resolver = resolver
        self.audit = audit
        self.dry_run = dry_run
        self.executor_factory = executor_factory
        self.progress_callback = progress_callback

    def execute(
        self,
        host: HostConfig,
        task_set: TaskSet,
        include_tags: Iterable[str] = (),
        exclude_tags: Iterable[str] = (),
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> RunResult:
        run_id = uuid.uuid4().hex
        include = tuple(include_tags)
        exclude = tuple(exclude_tags)
        started = datetime.now(timezone.utc)
        redact = self.resolver.secrets.redactor.redact
        logger.info("run=%s host=%s starting%s", run_id, host.name, " (check mode)" if self.dry_run else "")

        try:
            context = self.resolver.resolve(host, overrides, defaults=task_set.defaults)
            self.resolver.validate(task_set.tasks, context)
        except CONFIG_ERRORS as exc:
            message = redact(str(exc))
            logger.error("run=%s host=%s configuration error: %s", run_id, host.name, message)
            result = RunResult(run_id, host.name, started, datetime.now(timezone.utc), RunStatus.ERROR)
            self._audit(result, include, exclude, redact, error=message)
            raise

        selected = tag_filter.select(task_set.tasks, include, exclude)
        logger.debug(
            "run=%s host=%s selected %d of %d tasks", run_id, host.name, len(selected), len(task_set.tasks)
        )
        runner = TaskRunner(
            host,
            context,
            dry_run=self.dry_run,
            executor_factory=self.executor_factory,
            progress_callback=self.progress_callback,
        )
        results = runner.run(selected)
        result = RunResult(
            run_id=run_id,
            host=host.name,
            started_at=started,
            finished_at=datetime.now(timezone.utc),
            status=run_status(results),
            results=results,
        )
        logger.info("run=%s host=%s finished: %s", run_id, host.name, result.status.value)
        self._audit(result, include, exclude, redact)
        return result

    def _audit(self, result: RunResult, include, exclude, redact, error: Optional[str] = None) -> None:
        if self.audit is None:
            return
        self.audit.record_run(result, error=error, include_tags=include, exclude_tags=exclude, redact=redact)


def run_status(results: Iterable[TaskResult]) -> RunStatus:
    results = list(results)
    if any(r.failed and not r.ignored for r in results):
        return RunStatus.FAILED
    if any(r.changed for r in results):
        return RunStatus.CHANGED
    return RunStatus.UNCHANGED
