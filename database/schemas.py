"""
Pydantic schemas for request/response validation
Separate from SQLAlchemy models for clean API contracts
"""

from pydantic import BaseModel, Field, ConfigDict
from typing import Optional
from datetime import datetime


# ==========================================
# REFERENCE MATERIAL SCHEMAS
# ==========================================

class ReferenceMaterialCreate(BaseModel):
    """Schema for uploading a reference material as plain text"""
    title: str = Field(..., min_length=1, max_length=255, description="Book or notes title")
    author: Optional[str] = Field(None, max_length=255)
    text_content: str = Field(..., min_length=1, description="Full text; paragraphs separated by blank lines")


class ReferenceMaterialResponse(BaseModel):
    """Schema for ReferenceMaterial response (text omitted)"""
    id: int
    title: str
    author: Optional[str] = None
    chunk_count: int = 0
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)
