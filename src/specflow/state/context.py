from __future__ import annotations

import copy
from typing import Any


class ContextStore:
    """Key/value bag scoped to a single workflow run.

    Keys starting with an underscore are transient: they are visible to
    handlers during the run but never written into checkpoints.
    """

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._values: dict[str, Any] = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._values[key] = value

    def setdefault(self, key: str, default: Any) -> Any:
        return self._values.setdefault(key, default)

    def __contains__(self, key: object) -> bool:
        return key in self._values

    def snapshot(self) -> dict[str, Any]:
        return {
            key: copy.deepcopy(value)
            for key, value in self._values.items()
            if not key.startswith("_")
        }

    @classmethod
    def restore(cls, variables: dict[str, Any]) -> ContextStore:
        return cls(copy.deepcopy(variables))
