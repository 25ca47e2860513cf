from __future__ import annotations

from typing import Protocol

from veoflow.domain.models import GenerationRequest, Operation


class OperationPoller(Protocol):
    async def submit(self, endpoint: str, token: str, request: GenerationRequest) -> str:
        ...

    async def poll(self, endpoint: str, token: str, operation_name: str) -> Operation:
        ...
