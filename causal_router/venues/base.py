from __future__ import annotations

from abc import ABC, abstractmethod

from causal_router.models import ExecutionRequest, ExecutionResult


class ExecutionVenue(ABC):
    """Strategy executor contract.

    Implementations either return an ExecutionResult (success or a failure
    they classified themselves) or raise; the dispatcher turns anything
    raised into a failed result.
    """

    name: str

    @abstractmethod
    async def execute(self, request: ExecutionRequest) -> ExecutionResult:
        raise NotImplementedError

    def supports(self, strategy_id: str) -> bool:
        return True

    async def aclose(self) -> None:
        return None
