from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any, Literal

from specflow.errors import ConfigurationError

TaskStatus = Literal["pending", "in_progress", "completed", "blocked"]
TASK_STATUSES = ("pending", "in_progress", "completed", "blocked")

_WHITE, _GREY, _BLACK = 0, 1, 2


@dataclass(slots=True)
class Task:
    id: str
    title: str
    description: str = ""
    requirements: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    estimated_complexity: str = "medium"
    status: TaskStatus = "pending"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "requirements": list(self.requirements),
            "dependencies": list(self.dependencies),
            "estimatedComplexity": self.estimated_complexity,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any], *, index: int = 0) -> Task:
        raw_id = str(payload.get("id") or "").strip()
        dependencies: list[str] = []
        for dep in payload.get("dependencies") or []:
            dep_id = str(dep).strip()
            if dep_id and dep_id not in dependencies:
                dependencies.append(dep_id)
        status = str(payload.get("status") or "pending")
        return cls(
            id=raw_id or task_id_for(index),
            title=str(payload.get("title") or raw_id or task_id_for(index)),
            description=str(payload.get("description") or ""),
            requirements=[str(item) for item in payload.get("requirements") or []],
            dependencies=dependencies,
            estimated_complexity=str(
                payload.get("estimatedComplexity") or payload.get("estimated_complexity") or "medium"
            ),
            status=status if status in TASK_STATUSES else "pending",  # type: ignore[arg-type]
        )


def task_id_for(index: int) -> str:
    return f"task-{index + 1:03d}"


class TaskGraph:
    """Dependency graph over tasks, kept in original analysis order."""

    def __init__(self, tasks: Iterable[Task]) -> None:
        self._tasks: dict[str, Task] = {}
        for task in tasks:
            if task.id in self._tasks:
                raise ConfigurationError(f"Duplicate task id: {task.id}")
            self._tasks[task.id] = task

    @classmethod
    def from_dicts(cls, payloads: Iterable[dict[str, Any]]) -> TaskGraph:
        return cls(Task.from_dict(payload, index=index) for index, payload in enumerate(payloads))

    def __iter__(self) -> Iterator[Task]:
        return iter(self._tasks.values())

    def __len__(self) -> int:
        return len(self._tasks)

    def get(self, task_id: str) -> Task:
        try:
            return self._tasks[task_id]
        except KeyError as exc:
            raise ConfigurationError(f"Unknown task id: {task_id}") from exc

    def validate(self) -> None:
        """Reject dangling dependencies and cycles before anything runs."""
        for task in self._tasks.values():
            missing = [dep for dep in task.dependencies if dep not in self._tasks]
            if missing:
                raise ConfigurationError(
                    f"Task {task.id} depends on unknown task(s): {', '.join(missing)}"
                )
        cycle = self.find_cycle()
        if cycle:
            raise ConfigurationError(f"Task dependency cycle detected: {' -> '.join(cycle)}")

    def find_cycle(self) -> list[str] | None:
        colour = {task_id: _WHITE for task_id in self._tasks}
        path: list[str] = []

        def visit(task_id: str) -> list[str] | None:
            colour[task_id] = _GREY
            path.append(task_id)
            for dep in self._tasks[task_id].dependencies:
                if dep not in self._tasks:
                    continue
                if colour[dep] == _GREY:
                    return path[path.index(dep):] + [dep]
                if colour[dep] == _WHITE:
                    found = visit(dep)
                    if found:
                        return found
            path.pop()
            colour[task_id] = _BLACK
            return None

        for task_id in self._tasks:
            if colour[task_id] == _WHITE:
                found = visit(task_id)
                if found:
                    return found
        return None

    def is_ready(self, task: Task) -> bool:
        return task.status == "pending" and all(
            self._tasks[dep].status == "completed"
            for dep in task.dependencies
            if dep in self._tasks
        )

    def ready(self) -> list[Task]:
        return [task for task in self._tasks.values() if self.is_ready(task)]

    def next_ready(self) -> Task | None:
        ready = self.ready()
        return ready[0] if ready else None

    def set_status(self, task_id: str, status: TaskStatus) -> Task:
        if status not in TASK_STATUSES:
            raise ValueError(f"Unsupported task status: {status}")
        task = self.get(task_id)
        task.status = status
        return task

    def ids_with_status(self, *statuses: str) -> list[str]:
        return [task.id for task in self._tasks.values() if task.status in statuses]

    def completed_results(self, task: Task, results: dict[str, Any]) -> dict[str, Any]:
        """Results of the task's dependencies that have completed, nothing else."""
        return {
            dep: results[dep]
            for dep in task.dependencies
            if dep in results and self._tasks[dep].status == "completed"
        }

    def to_dicts(self) -> list[dict[str, Any]]:
        return [task.to_dict() for task in self._tasks.values()]


def build_plan(payloads: Iterable[dict[str, Any]]) -> TaskGraph:
    """Graph for a planned task list; an empty plan or an invalid graph is fatal."""
    graph = TaskGraph.from_dicts(payloads)
    if not len(graph):
        raise ConfigurationError("Planning produced zero tasks; nothing to execute.")
    graph.validate()
    return graph
