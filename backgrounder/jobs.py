from __future__ import annotations

from pydantic import BaseModel, ConfigDict

PROCESS = "process"
STORE = "store"


class JobDescriptor(BaseModel):
    """What a worker needs to reload an entity and finish one attachment column."""

    model_config = ConfigDict(frozen=True)

    worker_kind: str
    entity_type: str
    entity_id: str
    column: str
