"""Subscription plan catalog.

The catalog is configuration: it is loaded once at process start, either
from the built-in tiers or from a JSON file, and passed explicitly to the
EntitlementEngine. Nothing in the engine mutates it.

JSON file format:
    {
      "plans": [
        {"name": "starter", "display_name": "Starter Plan", "price": 300000,
         "currency": "NGN", "limits": {"tenants": 1, "campaigns": 3}}
      ]
    }

A limit of 0 means unlimited. A resource kind missing from a plan's limits
is not permitted on that plan at all.
"""

import json
import logging
from pathlib import Path
from types import MappingProxyType
from typing import Iterator, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from offertory.api.errors import NotFound
from offertory.models.entitlement import UNLIMITED, ResourceKind

logger = logging.getLogger(__name__)

DEFAULT_PLAN = "free"


class SubscriptionPlan(BaseModel):
    """One named tier: price per billing period and resource ceilings."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    display_name: str = ""
    price: int = Field(default=0, ge=0, description="Minor units per monthly period")
    currency: str = "NGN"
    limits: dict[ResourceKind, int] = Field(default_factory=dict)
    description: str = ""

    @field_validator("limits")
    @classmethod
    def _non_negative(cls, value: dict[ResourceKind, int]) -> dict[ResourceKind, int]:
        for kind, limit in value.items():
            if limit < 0:
                raise ValueError(f"limit for {kind.value} must be >= 0")
        return value

    def limit_for(self, kind: ResourceKind | str) -> Optional[int]:
        """Ceiling for kind; None when the plan does not include it."""
        return self.limits.get(ResourceKind(kind))

    def permits(self, kind: ResourceKind | str) -> bool:
        return self.limit_for(kind) is not None

    def is_unlimited(self, kind: ResourceKind | str) -> bool:
        return self.limit_for(kind) == UNLIMITED


DEFAULT_PLANS = (
    SubscriptionPlan(
        name="free",
        display_name="Free Plan",
        price=0,
        limits={},
        description="Free tier for basic app usage and donations",
    ),
    SubscriptionPlan(
        name="starter",
        display_name="Starter Plan",
        price=300000,
        limits={
            ResourceKind.TENANTS: 1,
            ResourceKind.CAMPAIGNS: 3,
            ResourceKind.STAFF: 3,
            ResourceKind.VOLUNTEERS: UNLIMITED,
            ResourceKind.TEAMS: UNLIMITED,
        },
        description="Perfect for small churches getting started",
    ),
    SubscriptionPlan(
        name="organisation",
        display_name="Organisation Plan",
        price=900000,
        limits={kind: UNLIMITED for kind in ResourceKind},
        description="Complete solution for large organizations and church networks",
    ),
)


class PlanCatalog:
    """Immutable snapshot of the available plans, keyed by name."""

    def __init__(self, plans):
        by_name = {}
        for plan in plans:
            if plan.name in by_name:
                raise ValueError(f"Duplicate plan name '{plan.name}'")
            by_name[plan.name] = plan
        if not by_name:
            raise ValueError("Plan catalog is empty")
        self._plans: Mapping[str, SubscriptionPlan] = MappingProxyType(by_name)

    def get(self, name: str) -> SubscriptionPlan:
        """Plan by name. Raises NotFound for unknown names."""
        try:
            return self._plans[name]
        except KeyError:
            raise NotFound(f"Plan '{name}' not found") from None

    def names(self) -> list[str]:
        return list(self._plans)

    def __contains__(self, name: object) -> bool:
        return name in self._plans

    def __iter__(self) -> Iterator[SubscriptionPlan]:
        return iter(self._plans.values())

    def __len__(self) -> int:
        return len(self._plans)


def load_plan_catalog(path: Optional[str | Path] = None) -> PlanCatalog:
    """
    Build the catalog from a JSON file, or from the built-in tiers.

    Args:
        path: Optional JSON file (see module docstring)

    Returns:
        PlanCatalog

    Raises:
        ValueError: If the file is not a valid catalog
    """
    if path is None:
        logger.debug("Using built-in plan catalog")
        return PlanCatalog(DEFAULT_PLANS)

    with open(path, encoding="utf-8") as f:
        data = json.load(f)

    try:
        plans = [SubscriptionPlan.model_validate(item) for item in data["plans"]]
    except (KeyError, TypeError) as e:
        raise ValueError(f"Plan catalog {path} must contain a 'plans' list") from e
    except ValidationError as e:
        raise ValueError(f"Invalid plan in {path}: {e}") from e

    logger.info("Loaded %d plans from %s", len(plans), path)
    return PlanCatalog(plans)


__all__ = ["SubscriptionPlan", "PlanCatalog", "load_plan_catalog", "DEFAULT_PLANS", "DEFAULT_PLAN"]
