"""
In-process durable store.

Keeps checkpoints and deferred operations in memory. Useful for tests and
for single-process deployments that accept losing resume state on restart.
"""

import asyncio
from typing import Dict, List, Optional

from ingestion.interfaces import DurableStore
from schemas.sync import Checkpoint, DeferredOperationDescriptor


class InMemoryStore(DurableStore):

    def __init__(self):
        self._lock = asyncio.Lock()
        self.checkpoints: Dict[str, Checkpoint] = {}
        self.deferred: List[DeferredOperationDescriptor] = []

    async def save_checkpoint(self, session_id: str, checkpoint: Checkpoint) -> None:
        async with self._lock:
            self.checkpoints[session_id] = checkpoint.model_copy(deep=True)

    async def load_checkpoint(self, session_id: str) -> Optional[Checkpoint]:
        async with self._lock:
            checkpoint = self.checkpoints.get(session_id)
            return checkpoint.model_copy(deep=True) if checkpoint else None

    async def clear_checkpoint(self, session_id: str) -> None:
        async with self._lock:
            self.checkpoints.pop(session_id, None)

    async def enqueue(self, descriptor: DeferredOperationDescriptor) -> None:
        async with self._lock:
            self.deferred.append(descriptor)

