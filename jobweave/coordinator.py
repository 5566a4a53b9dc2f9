"""Serialized owner of workflow, batch, pipeline, progress and recurring records."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Tuple, Type, TypeVar

from pydantic import BaseModel

from .config import OrchestratorConfig
from .models import Batch, Pipeline, Progress, RecurringJob, Workflow
from .persistence import KeyValueStore

logger = logging.getLogger(__name__)

RecordT = TypeVar("RecordT", bound=BaseModel)

# record type -> (key namespace, attribute naming its retention window)
_RECORD_KINDS: Dict[Type[BaseModel], Tuple[str, str]] = {
    Workflow: ("workflow", "workflow_ttl"),
    Batch: ("batch", "batch_ttl"),
    Pipeline: ("pipeline", "pipeline_ttl"),
    Progress: ("progress", "progress_ttl"),
    RecurringJob: ("recurring", "recurring_ttl"),
}


class Coordinator:
    """Single mutator of orchestration state.

    Every state transition runs inside ``async with coordinator.lock:``, one
    at a time. Records live in the key-value store, keyed by kind and id,
    with the retention window of their kind. Readers get copies.
    """

    def __init__(self, store: KeyValueStore, config: Optional[OrchestratorConfig] = None) -> None:
        self.store = store
        self.config = config or OrchestratorConfig()
        self.lock = asyncio.Lock()

    @staticmethod
    def key(model: Type[BaseModel], record_id) -> str:
        namespace, _ = _RECORD_KINDS[model]
        return f"{namespace}:{record_id}"

    def ttl(self, model: Type[BaseModel]) -> Optional[float]:
        _, attr = _RECORD_KINDS[model]
        return getattr(self.config, attr)

    async def load(self, model: Type[RecordT], record_id) -> Optional[RecordT]:
        data = await self.store.get(self.key(model, record_id))
        if data is None:
            return None
        return model.model_validate(data)

    async def save(self, record: BaseModel, record_id=None) -> None:
        model = type(record)
        rid = record_id if record_id is not None else getattr(record, "id")
        await self.store.put(
            self.key(model, rid), record.model_dump(mode="json"), ttl=self.ttl(model)
        )

    async def delete(self, model: Type[BaseModel], record_id) -> None:
        await self.store.delete(self.key(model, record_id))

    async def list(self, model: Type[RecordT]) -> List[RecordT]:
        namespace, _ = _RECORD_KINDS[model]
        records: List[RecordT] = []
        for key in await self.store.keys(f"{namespace}:"):
            data = await self.store.get(key)
            if data is not None:
                records.append(model.model_validate(data))
        return records
