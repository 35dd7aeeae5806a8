"""Pydantic model for embedding-ready chunks (the chunk file records)."""

from pydantic import BaseModel, Field


class Chunk(BaseModel):
    id: str = Field(description="Unique chunk ID: {source_url}#chunk_{index}")
    source_url: str
    title: str = ""
    content: str = Field(description="The chunk text for embedding and retrieval")
    chunk_index: int
    total_chunks: int
    token_estimate: int = Field(0, description="Word count times the token multiplier")
    metadata: dict = Field(
        default_factory=dict,
        description="Provenance fields that vary by source (crawled_at, ...)",
    )
