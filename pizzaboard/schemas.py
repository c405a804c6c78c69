"""
Pydantic schemas for API request/response models
"""
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


# ===== CACHE SCHEMAS =====

class CacheConfigUpdate(BaseModel):
    """Partial cache configuration update; omitted fields are unchanged."""
    default_ttl_seconds: Optional[float] = Field(None, gt=0)
    max_memory_items: Optional[int] = Field(None, ge=1)
    persist_to_storage: Optional[bool] = None
    storage_prefix: Optional[str] = Field(None, min_length=1)


class CacheConfigOut(BaseModel):
    default_ttl_seconds: float
    max_memory_items: int
    persist_to_storage: bool
    storage_prefix: str


# ===== PRELOAD SCHEMAS =====

class PreloadSummary(BaseModel):
    """Outcome of a preload run."""
    from_date: str
    to_date: str
    all_cached: bool
    failures: List[str]
    loaded: Dict[str, Any]
