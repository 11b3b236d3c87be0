"""
Weight Inheritance
===================
Resolves the coarse and fine factor weights for a request through the chain

    template → product → category → global

Each level may override individual factors. A level with ``inherit=False``
stops the walk: nothing above it contributes. The merged weights are
normalized so they sum to ``EngineConfig.weight_total``.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .config import DEFAULT_COARSE_WEIGHTS, DEFAULT_FINE_WEIGHTS
from .models import TaskInput

logger = logging.getLogger(__name__)

COARSE_FACTORS = tuple(DEFAULT_COARSE_WEIGHTS)
FINE_FACTORS = tuple(DEFAULT_FINE_WEIGHTS)

_CAMEL_FINE = {
    "userPreference": "user_preference",
    "businessValue": "business_value",
    "technicalQuality": "technical_quality",
    "marketTrend": "market_trend",
}


@dataclass
class WeightProfile:
    """Factor overrides for one level of the chain."""
    level: str                                  # global | category | product | template
    key: str
    coarse: Dict[str, float] = field(default_factory=dict)
    fine: Dict[str, float] = field(default_factory=dict)
    inherit: bool = True

    @classmethod
    def from_dict(cls, level: str, key: str, data: dict) -> "WeightProfile":
        fine = {_CAMEL_FINE.get(k, k): float(v) for k, v in (data.get("fine") or {}).items()}
        return cls(
            level=level,
            key=key,
            coarse={k: float(v) for k, v in (data.get("coarse") or {}).items()},
            fine=fine,
            inherit=bool(data.get("inherit", True)),
        )

    @property
    def label(self) -> str:
        return "global" if self.level == "global" else f"{self.level}:{self.key}"


@dataclass
class ResolvedWeights:
    coarse: Dict[str, float]
    fine: Dict[str, float]
    chain: List[str]

    def to_snapshot(self) -> dict:
        return {
            "coarse": dict(self.coarse),
            "fine": dict(self.fine),
            "inheritanceChain": list(self.chain),
        }


def normalize(weights: Dict[str, float], factors, total: float = 1.0) -> Dict[str, float]:
    """Scale non-negative weights to sum to `total`. All-zero input falls back to equal weights."""
    clean = {f: max(0.0, float(weights.get(f, 0.0))) for f in factors}
    s = sum(clean.values())
    if s <= 0:
        return {f: total / len(factors) for f in factors}
    return {f: v * total / s for f, v in clean.items()}


class WeightRegistry:
    """
    Holds the weight profiles for every level.

    Usage:
        registry = WeightRegistry.from_dict(catalog.get("weights", {}))
        resolved = registry.resolve(task, weight_total=1.0)
    """

    def __init__(self, global_profile: Optional[WeightProfile] = None):
        self.global_profile = global_profile or WeightProfile(
            level="global",
            key="global",
            coarse=dict(DEFAULT_COARSE_WEIGHTS),
            fine=dict(DEFAULT_FINE_WEIGHTS),
        )
        self.categories: Dict[str, WeightProfile] = {}
        self.products: Dict[str, WeightProfile] = {}
        self.templates: Dict[str, WeightProfile] = {}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "WeightRegistry":
        data = data or {}
        global_profile = None
        if data.get("global"):
            overrides = WeightProfile.from_dict("global", "global", data["global"])
            global_profile = WeightProfile(
                level="global",
                key="global",
                coarse={**DEFAULT_COARSE_WEIGHTS, **overrides.coarse},
                fine={**DEFAULT_FINE_WEIGHTS, **overrides.fine},
            )
        registry = cls(global_profile)
        for level, bucket in (
            ("category", "categories"),
            ("product", "products"),
            ("template", "templates"),
        ):
            for key, profile in (data.get(bucket) or {}).items():
                registry.set_profile(WeightProfile.from_dict(level, key, profile))
        return registry

    def set_profile(self, profile: WeightProfile) -> None:
        target = {
            "category": self.categories,
            "product": self.products,
            "template": self.templates,
        }.get(profile.level)
        if target is None:
            raise ValueError(f"Unknown weight level: {profile.level}")
        target[profile.key] = profile

    def _chain(self, task: Optional[TaskInput]) -> List[WeightProfile]:
        """Most specific first, stopping at the first level that disables inheritance."""
        candidates: List[Optional[WeightProfile]] = []
        if task is not None:
            candidates = [
                self.templates.get(task.template_id) if task.template_id else None,
                self.products.get(task.product_id) if task.product_id else None,
                self.categories.get(task.category) if task.category else None,
            ]

        chain: List[WeightProfile] = []
        for profile in candidates:
            if profile is None:
                continue
            chain.append(profile)
            if not profile.inherit:
                return chain
        chain.append(self.global_profile)
        return chain

    def resolve(self, task: Optional[TaskInput], weight_total: float = 1.0) -> ResolvedWeights:
        chain = self._chain(task)

        coarse: Dict[str, float] = {}
        fine: Dict[str, float] = {}
        # Most general first so more specific levels override
        for profile in reversed(chain):
            coarse.update(profile.coarse)
            fine.update(profile.fine)

        return ResolvedWeights(
            coarse=normalize(coarse, COARSE_FACTORS, weight_total),
            fine=normalize(fine, FINE_FACTORS, weight_total),
            chain=[p.label for p in chain],
        )
