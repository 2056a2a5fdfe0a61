"""Input paper model."""

import hashlib
import re
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class Paper(BaseModel):
    """
    A paper submitted for analysis.

    Only ``title`` is required; everything else improves extraction quality
    when present.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: Optional[str] = None
    doi: Optional[str] = None
    title: str
    abstract: str = ""
    full_text: str = Field(default="", alias="fullText")
    authors: List[str] = Field(default_factory=list)
    year: Optional[int] = None
    citations: int = 0
    venue: Optional[str] = None
    url: Optional[str] = None

    @property
    def has_explicit_id(self) -> bool:
        return bool(self.id or self.doi)

    @property
    def paper_id(self) -> str:
        """
        Stable identifier: explicit id, then DOI, then a title/year slug.

        The slug ends with a digest of the full title so papers whose titles
        share a prefix get distinct ids.
        """
        if self.id:
            return self.id
        if self.doi:
            return self.doi
        slug = re.sub(r"[^a-z0-9]", "", self.title.lower())[:20] or "unknown"
        digest = hashlib.sha1(self.title.encode("utf-8")).hexdigest()[:8]
        return f"{slug}_{self.year or 'unknown'}_{digest}"
