"""Pydantic models for crawl-stage records: URLs, fetched pages, processed pages."""

from typing import Optional, List

from pydantic import BaseModel, ConfigDict, Field


class UrlRecord(BaseModel):
    raw: str = Field(description="URL as discovered (seed list or extracted link)")
    normalized: str = Field(description="Canonical form used for dedup and fetching")
    depth: int = Field(0, description="Link distance from the seed set")
    visited: bool = False


class PageDocument(BaseModel):
    """A fetched page. Produced once by the Fetcher, consumed once by the Chunker."""

    model_config = ConfigDict(frozen=True)

    url: str
    title: str = ""
    text: str = Field("", description="Extracted content region text")
    links: List[str] = Field(
        default_factory=list, description="Normalized outbound links for frontier expansion"
    )
    snapshot_path: Optional[str] = Field(
        None, description="Where the raw HTML snapshot was written, if anywhere"
    )


class ProcessedPage(BaseModel):
    """One cleaned raw-HTML snapshot (processed-pages file entry)."""

    file: str
    content: str
    meta: dict = Field(
        default_factory=dict,
        description="Structured data: json_ld, open_graph, canonical_url, title",
    )

    def to_document(self) -> PageDocument:
        """Rebuild a PageDocument, recovering the URL from the page metadata."""
        open_graph = self.meta.get("open_graph") or {}
        url = self.meta.get("canonical_url") or open_graph.get("url") or self.file
        title = self.meta.get("title") or open_graph.get("title") or ""
        return PageDocument(url=url, title=title, text=self.content)
