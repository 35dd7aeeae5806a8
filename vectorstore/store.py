"""Flat JSON vector store.

The store is the embedding output file loaded into memory: a list of
``EmbeddingRecord`` rows searched by linear scan. Once loaded it is read-only;
a new embedding run rebuilds the file instead of mutating it.
"""

import logging
from collections import Counter
from pathlib import Path
from typing import Iterator, Optional, Union

from errors import ValidationError
from schemas.embedding import EmbeddingRecord
from scrapers.utils import load_records, save_json

logger = logging.getLogger(__name__)


class VectorStore:
    """Read-only collection of embedded records."""

    def __init__(self, records: list[EmbeddingRecord]):
        self._records = tuple(records)
        dims = Counter(len(r.embedding) for r in self._records)
        self.dimension: Optional[int] = dims.most_common(1)[0][0] if dims else None
        if len(dims) > 1:
            # Search scores mismatched vectors as 0 rather than failing
            logger.warning("Store mixes embedding dimensions %s; mismatched rows will never match", dict(dims))

    @classmethod
    def load(cls, path: Union[str, Path]) -> "VectorStore":
        """Load an embedding output file, keeping only rows with a vector and no error."""
        filepath = Path(path)
        if not filepath.exists():
            raise ValidationError("embeddings", f"file not found: {filepath}")

        rows = load_records(filepath)
        records = []
        skipped = 0
        for row in rows:
            record = EmbeddingRecord.model_validate(row)
            if record.ok:
                records.append(record)
            else:
                skipped += 1

        logger.info("Loaded %d embeddings from %s (%d skipped without a vector)", len(records), filepath, skipped)
        return cls(records)

    @staticmethod
    def save(records: list[EmbeddingRecord], path: Union[str, Path]) -> Path:
        """Write the embedding output file, failed records included."""
        filepath = save_json([r.to_json() for r in records], path)
        logger.info("Saved %d embedding records to %s", len(records), filepath)
        return filepath

    @property
    def records(self) -> tuple[EmbeddingRecord, ...]:
        return self._records

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[EmbeddingRecord]:
        return iter(self._records)
