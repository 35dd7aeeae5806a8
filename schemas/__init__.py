from schemas.page import UrlRecord, PageDocument, ProcessedPage
from schemas.chunk import Chunk
from schemas.embedding import EmbeddingRecord
