from pydantic import BaseModel, Field
from typing import Optional, Dict, Any, List

class TodoistConnectRequest(BaseModel):
    token: str

class MappingEntryIn(BaseModel):
    external_id: str
    local_id: Optional[int] = None

class MappingSetRequest(BaseModel):
    mappings: List[MappingEntryIn] = Field(default_factory=list)

class MappingListCreateRequest(BaseModel):
    name: str

class ConflictResolveRequest(BaseModel):
    resolution: str

class ConflictOut(BaseModel):
    id: int
    entity_type: str
    local_id: Optional[int] = None
    external_id: Optional[str] = None
    conflict_type: str
    local_payload: Optional[Dict[str, Any]] = None
    external_payload: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None

class ConflictListResponse(BaseModel):
    conflicts: List[ConflictOut]

class TodoistSyncStatusResponse(BaseModel):
    connected: bool
    status: str
    last_synced_at: Optional[str] = None
    sync_started_at: Optional[str] = None
    error: Optional[str] = None
    pending_conflicts: int = 0

class SyncRunResponse(BaseModel):
    status: str
    code: Optional[str] = None
    error: Optional[str] = None
    created_local: int = 0
    created_remote: int = 0
    updated_local: int = 0
    updated_remote: int = 0
    conflicts: int = 0
    failed: int = 0
    pending_conflicts: int = 0

class EnqueueAllResponse(BaseModel):
    status: str
    enqueued: int
    job_ids: List[str] = Field(default_factory=list)
