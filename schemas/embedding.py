"""Pydantic model for embedding output records (the vector store rows)."""

from typing import List, Optional

from pydantic import BaseModel, Field


class EmbeddingRecord(BaseModel):
    id: str
    chunk_index: int = 0
    content: str = ""
    metadata: dict = Field(default_factory=dict)
    embedding: List[float] = Field(default_factory=list)
    error: Optional[str] = Field(
        None, description="Set instead of an embedding when the inference call failed"
    )

    @property
    def ok(self) -> bool:
        return self.error is None and bool(self.embedding)

    def to_json(self) -> dict:
        """Serialize for the embedding output file (error omitted when unset)."""
        return self.model_dump(mode="json", exclude_none=True)
