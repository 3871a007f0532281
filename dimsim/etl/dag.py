"""
Lightweight DAG engine for the materialization pipeline.

Tasks run in topological order and pass results downstream through a
shared context dict. A failed task marks its dependents as skipped; the
original exception is kept on the task so the caller can re-raise it.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

logger = logging.getLogger(__name__)


class TaskStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class TaskNode:
    """A single unit of work inside a DAG."""

    name: str
    execute_fn: Callable[[dict[str, Any]], dict[str, Any] | None]
    depends_on: list[str] = field(default_factory=list)
    status: TaskStatus = TaskStatus.PENDING
    result: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    exception: Exception | None = None
    duration_ms: float = 0.0


class DAG:
    """
    A directed acyclic graph of TaskNodes.

    Usage:
        dag = DAG("materialize_star_schema")
        dag.add_task("extract", extract_fn)
        dag.add_task("build_dimensions", dims_fn, depends_on=["extract"])
        dag.add_task("build_facts", facts_fn, depends_on=["build_dimensions"])
        result = dag.run(initial_context={"entity_store": store})
    """

    def __init__(self, name: str):
        self.name = name
        self.tasks: dict[str, TaskNode] = {}

    def add_task(
        self,
        name: str,
        execute_fn: Callable[[dict[str, Any]], dict[str, Any] | None],
        depends_on: list[str] | None = None,
    ) -> DAG:
        if name in self.tasks:
            raise ValueError(f"Duplicate task name: {name}")
        self.tasks[name] = TaskNode(
            name=name, execute_fn=execute_fn, depends_on=depends_on or []
        )
        return self

    def _topological_sort(self) -> list[str]:
        """Kahn's algorithm – returns tasks in dependency order."""
        in_degree: dict[str, int] = {name: 0 for name in self.tasks}
        for task in self.tasks.values():
            for dep in task.depends_on:
                if dep not in self.tasks:
                    raise ValueError(
                        f"Task '{task.name}' depends on unknown task '{dep}'"
                    )
                in_degree[task.name] += 1

        queue = [name for name, deg in in_degree.items() if deg == 0]
        order: list[str] = []

        while queue:
            current = queue.pop(0)
            order.append(current)
            for name, task in self.tasks.items():
                if current in task.depends_on:
                    in_degree[name] -= 1
                    if in_degree[name] == 0:
                        queue.append(name)

        if len(order) != len(self.tasks):
            raise ValueError("Cycle detected in DAG")
        return order

    def run(self, initial_context: dict[str, Any] | None = None) -> dict[str, Any]:
        """
        Execute all tasks in topological order.
        Each task receives the merged context from its upstream dependencies.
        """
        execution_order = self._topological_sort()
        context = dict(initial_context or {})
        summary: dict[str, Any] = {"pipeline": self.name, "tasks": {}}

        logger.info("Starting pipeline '%s' with %d tasks", self.name, len(self.tasks))

        for task_name in execution_order:
            task = self.tasks[task_name]

            upstream_failed = any(
                self.tasks[dep].status in (TaskStatus.FAILED, TaskStatus.SKIPPED)
                for dep in task.depends_on
            )
            if upstream_failed:
                task.status = TaskStatus.SKIPPED
                logger.warning("Skipping '%s' – upstream dependency failed", task_name)
                summary["tasks"][task_name] = {"status": "skipped"}
                continue

            for dep in task.depends_on:
                context.update(self.tasks[dep].result)

            task.status = TaskStatus.RUNNING
            logger.info("Running task '%s'", task_name)
            start = time.perf_counter()
            try:
                task.result = task.execute_fn(context) or {}
                task.status = TaskStatus.SUCCESS
            except Exception as exc:
                task.status = TaskStatus.FAILED
                task.error = str(exc)
                task.exception = exc
                logger.error("Task '%s' failed: %s", task_name, exc)
            finally:
                task.duration_ms = (time.perf_counter() - start) * 1000

            summary["tasks"][task_name] = {
                "status": task.status.value,
                "duration_ms": round(task.duration_ms, 2),
                "error": task.error,
            }

        all_success = all(t.status == TaskStatus.SUCCESS for t in self.tasks.values())
        summary["status"] = "completed" if all_success else "failed"
        logger.info("Pipeline '%s' finished – %s", self.name, summary["status"])
        return summary

    def first_failure(self) -> TaskNode | None:
        """The earliest failed task in execution order, if any."""
        for name in self._topological_sort():
            if self.tasks[name].status == TaskStatus.FAILED:
                return self.tasks[name]
        return None

    def to_dict(self) -> dict[str, Any]:
        """Serialize the DAG definition (stored in etl_runs.dag_definition)."""
        return {
            "name": self.name,
            "tasks": {
                name: {"depends_on": task.depends_on}
                for name, task in self.tasks.items()
            },
        }
