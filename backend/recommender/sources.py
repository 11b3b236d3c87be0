"""
Candidate Sources
==================
Where raw candidate pools come from. The pool cache validates whatever a source
returns, so sources hand back plain dicts and never need to know the schemas.
"""

import copy
import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Union

from .models import ContextInput, TaskInput

logger = logging.getLogger(__name__)


class CandidateSource(ABC):
    """Produces the raw candidate rows for a scenario."""

    @abstractmethod
    async def fetch(
        self,
        scenario: str,
        task: Optional[TaskInput],
        context: Optional[ContextInput],
    ) -> List[dict]:
        ...

    async def get(self, scenario: str, target_id: str) -> Optional[dict]:
        """Look up a single candidate by id (used by the fallback provider)."""
        for row in await self.fetch(scenario, None, None):
            if row.get("id") == target_id:
                return row
        return None


class CatalogCandidateSource(CandidateSource):
    """
    Static catalog: {scenario: [candidate rows]}.

    Usage:
        source = CatalogCandidateSource.from_file("catalog.json")
        rows = await source.fetch("task->model", task, context)
    """

    def __init__(
        self,
        catalog: Optional[Dict[str, List[dict]]] = None,
        weight_profiles: Optional[dict] = None,
    ):
        self._catalog: Dict[str, List[dict]] = catalog or {}
        self.weight_profiles: dict = weight_profiles or {}

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "CatalogCandidateSource":
        path = Path(path)
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)

        if not isinstance(data, dict):
            raise ValueError(f"Catalog {path} must be a JSON object")
        # Accept either {"scenarios": {...}, "weights": {...}} or the scenario mapping itself
        catalog = data.get("scenarios", data)
        weights = data.get("weights") if "scenarios" in data else None
        total = sum(len(rows) for rows in catalog.values() if isinstance(rows, list))
        logger.info(f"📚 Loaded candidate catalog from {path} ({total} candidates, {len(catalog)} scenarios)")
        return cls(catalog, weights)

    @property
    def scenarios(self) -> List[str]:
        return list(self._catalog.keys())

    async def fetch(
        self,
        scenario: str,
        task: Optional[TaskInput],
        context: Optional[ContextInput],
    ) -> List[dict]:
        rows = self._catalog.get(scenario, [])
        return copy.deepcopy(rows)

    def add(self, scenario: str, row: dict) -> None:
        self._catalog.setdefault(scenario, []).append(row)
