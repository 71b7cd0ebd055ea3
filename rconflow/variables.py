"""Execution-local variables and the workflow-scoped key-value store."""

from __future__ import annotations

import copy
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .persistence.repository import WorkflowRepository


class VariableStore:
    """Mutable variables of a single execution.

    Seeded from the definition defaults; never shared between executions.
    """

    def __init__(self, defaults: Optional[Dict[str, Any]] = None) -> None:
        self._values: Dict[str, Any] = copy.deepcopy(defaults or {})

    def get(self, name: str, default: Any = None) -> Any:
        return self._values.get(name, default)

    def set(self, name: str, value: Any) -> None:
        self._values[name] = value

    def delete(self, name: str) -> bool:
        if name not in self._values:
            return False
        del self._values[name]
        return True

    def __contains__(self, name: str) -> bool:
        return name in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def as_dict(self) -> Dict[str, Any]:
        """Live view used for template and condition evaluation."""
        return self._values

    def snapshot(self) -> Dict[str, Any]:
        return copy.deepcopy(self._values)


class KVStore:
    """Persistent key-value store scoped to one workflow.

    Values survive across executions. Writes are last-write-wins.
    """

    def __init__(self, repository: WorkflowRepository, workflow_id: str) -> None:
        self._repository = repository
        self.workflow_id = workflow_id

    async def get(self, key: str, default: Any = None) -> Any:
        entry = await self._repository.kv_get(self.workflow_id, key)
        return entry.value if entry is not None else default

    async def set(self, key: str, value: Any) -> None:
        await self._repository.kv_set(self.workflow_id, key, value)

    async def delete(self, key: str) -> bool:
        return await self._repository.kv_delete(self.workflow_id, key)

    async def exists(self, key: str) -> bool:
        return await self._repository.kv_get(self.workflow_id, key) is not None

    async def list(self) -> List[str]:
        return [e.key for e in await self._repository.kv_list(self.workflow_id)]

    async def items(self) -> List[Tuple[str, Any]]:
        return [(e.key, e.value) for e in await self._repository.kv_list(self.workflow_id)]

    async def clear(self) -> int:
        return await self._repository.kv_clear(self.workflow_id)

    async def count(self) -> int:
        return len(await self._repository.kv_list(self.workflow_id))
