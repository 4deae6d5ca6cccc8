"""
Abstract base class for field extractors.
Every extractor turns raw document bytes into ExtractedFields.
"""

from abc import ABC, abstractmethod

from app.schemas.batches import ExtractedFields


class FieldExtractor(ABC):
    """
    Contract between the analysis pool and any extraction heuristic.

    Every extractor must:
    1. Accept the raw bytes of one source document
    2. Return ExtractedFields with a 0-100 confidence score
    3. Raise ExtractionError when the document cannot be read at all
       (a readable document with missing fields is a low-confidence result,
       not an error)
    """

    @property
    @abstractmethod
    def extractor_name(self) -> str:
        """Unique identifier: 'pdf_text', ..."""
        ...

    @abstractmethod
    async def extract(self, data: bytes) -> ExtractedFields:
        ...

    async def health_check(self) -> bool:
        return True
