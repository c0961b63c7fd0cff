from __future__ import annotations

import concurrent.futures
import json
import logging
from typing import Any, Callable, Dict, Optional

from botocore.exceptions import BotoCoreError, ClientError

from farmrun.errors import FarmrunError
from farmrun.schemas import TaskResult

LOGGER = logging.getLogger("farmrun.tasks")

PERSIST_REPORT = "persist-report"
EXTRACT_REPORT = "extract-report"

TaskHandler = Callable[[Dict[str, Any]], TaskResult]


class TaskRunner:
    """Submit a named sibling task and wait for its ``TaskResult``.

    Every runner applies the same attempt budget and per-attempt timeout.
    ``_invoke`` reports failures as unsuccessful results instead of raising.
    """

    def __init__(self, *, attempts: int = 1, timeout_seconds: float = 120.0) -> None:
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        self.attempts = attempts
        self.timeout_seconds = timeout_seconds

    def _invoke(self, task: str, payload: Dict[str, Any]) -> TaskResult:
        raise NotImplementedError

    def submit(self, task: str, payload: Dict[str, Any]) -> TaskResult:
        result = TaskResult(success=False, error="Task was not attempted")
        for attempt in range(1, self.attempts + 1):
            result = self._invoke(task, payload)
            if result.success:
                return result
            LOGGER.warning("Task %s attempt %s/%s failed: %s", task, attempt, self.attempts, result.error)
        return result


class InlineTaskRunner(TaskRunner):
    """Run task handlers in-process on a worker thread."""

    def __init__(
        self,
        handlers: Dict[str, TaskHandler],
        *,
        attempts: int = 1,
        timeout_seconds: float = 120.0,
        executor: Optional[concurrent.futures.Executor] = None,
    ) -> None:
        super().__init__(attempts=attempts, timeout_seconds=timeout_seconds)
        self._handlers = dict(handlers)
        self._executor = executor or concurrent.futures.ThreadPoolExecutor(
            max_workers=2, thread_name_prefix="farmrun-task"
        )

    def _invoke(self, task: str, payload: Dict[str, Any]) -> TaskResult:
        handler = self._handlers.get(task)
        if handler is None:
            raise ValueError(f"Unknown task: {task}")
        future = self._executor.submit(handler, dict(payload))
        try:
            return future.result(timeout=self.timeout_seconds)
        except concurrent.futures.TimeoutError:
            # The worker thread cannot be interrupted; its result is discarded.
            return TaskResult(success=False, error=f"Task {task} timed out after {self.timeout_seconds}s")
        except FarmrunError as exc:
            return TaskResult(success=False, error=str(exc))
        except Exception as exc:
            LOGGER.exception("Task %s raised unexpectedly", task)
            return TaskResult(success=False, error=f"{type(exc).__name__}: {exc}")


class LambdaTaskRunner(TaskRunner):
    """Invoke tasks as AWS Lambda functions with a request/response call."""

    def __init__(
        self,
        client_factory: Callable[[], Any],
        function_names: Dict[str, str],
        *,
        attempts: int = 1,
        timeout_seconds: float = 120.0,
    ) -> None:
        super().__init__(attempts=attempts, timeout_seconds=timeout_seconds)
        self._client_factory = client_factory
        self._function_names = dict(function_names)

    def _invoke(self, task: str, payload: Dict[str, Any]) -> TaskResult:
        function_name = self._function_names.get(task)
        if not function_name:
            return TaskResult(success=False, error=f"No function configured for task {task}")
        try:
            response = self._client_factory().invoke(
                FunctionName=function_name,
                InvocationType="RequestResponse",
                Payload=json.dumps(payload).encode("utf-8"),
            )
            body = response["Payload"].read()
        except (ClientError, BotoCoreError) as exc:
            return TaskResult(success=False, error=f"Invoke of {function_name} failed: {exc}")
        if response.get("FunctionError"):
            return TaskResult(success=False, error=f"{function_name} raised: {body[:500]!r}")
        try:
            return TaskResult.model_validate(json.loads(body or b"{}"))
        except ValueError as exc:
            return TaskResult(success=False, error=f"{function_name} returned an invalid payload: {exc}")
