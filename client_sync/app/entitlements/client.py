"""
Billing client for plan, usage and limits.
"""

from typing import Any, Optional, Protocol, Type, TypeVar

from pydantic import BaseModel, ValidationError

from shared.errors import StructuralError
from shared.logging import get_logger

from .models import Limits, PlanPayload, Usage

ModelT = TypeVar("ModelT", bound=BaseModel)


class Transport(Protocol):
    """Transport collaborator used by the billing client."""

    async def request(self, method: str, path: str, body: Optional[Any] = None) -> Any:
        ...


class BillingClient:
    """Reads billing resources. The server is the source of truth."""

    CURRENT_PLAN_PATH = "/plans/user/current"
    USAGE_PATH = "/plans/user/usage"
    LIMITS_PATH = "/plans/user/limits"
    UPGRADE_PATH = "/plans/upgrade/pro"
    DOWNGRADE_PATH = "/plans/downgrade/free"

    def __init__(self, transport: Transport):
        self.transport = transport
        self.logger = get_logger("entitlements.billing_client")

    async def get_current_plan(self) -> PlanPayload:
        data = await self.transport.request("GET", self.CURRENT_PLAN_PATH)
        return self._parse(PlanPayload, data, self.CURRENT_PLAN_PATH)

    async def get_usage(self) -> Usage:
        data = await self.transport.request("GET", self.USAGE_PATH)
        return self._parse(Usage, data, self.USAGE_PATH)

    async def get_limits(self) -> Limits:
        data = await self.transport.request("GET", self.LIMITS_PATH)
        return self._parse(Limits, data, self.LIMITS_PATH)

    async def upgrade_to_pro(self) -> Any:
        return await self.transport.request("POST", self.UPGRADE_PATH)

    async def downgrade_to_free(self) -> Any:
        return await self.transport.request("POST", self.DOWNGRADE_PATH)

    def _parse(self, model: Type[ModelT], data: Any, path: str) -> ModelT:
        if not isinstance(data, dict):
            raise StructuralError("Expected a JSON object", details={"path": path})
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            self.logger.error("Malformed billing payload", path=path, error=str(exc))
            raise StructuralError("Malformed billing payload", details={"path": path}) from exc
