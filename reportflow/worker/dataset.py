"""
Locally available view data used by the self-contained report types.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional, Protocol

from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from reportflow.core.errors import ReportGenerationError
from reportflow.observability.logger import get_logger

logger = get_logger(__name__)


class ViewEvent(BaseModel):
    """
    One user viewing (and optionally rating) a movie.

    Attributes:
        user_id: Viewer
        movie_id: External movie id
        title: Movie title at the time of viewing
        rating: Optional user rating (0-10)
        viewed_at: When the view happened
    """

    user_id: str = Field(..., min_length=1)
    movie_id: str = Field(..., min_length=1)
    title: str
    rating: Optional[float] = Field(default=None, ge=0, le=10)
    viewed_at: datetime

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class ViewDataset(Protocol):
    def views(self) -> Iterable[ViewEvent]:
        ...


class InMemoryViewDataset:
    """Dataset backed by a list (tests and demos)."""

    def __init__(self, events: Iterable[ViewEvent] = ()):
        self._events = list(events)

    def views(self) -> Iterable[ViewEvent]:
        return list(self._events)


class JsonLinesViewDataset:
    """
    Dataset read from a JSON-lines file, one view event per line.

    Malformed lines are skipped with a warning; a missing file is an error.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def views(self) -> Iterable[ViewEvent]:
        if not self.path.exists():
            raise ReportGenerationError(f"View dataset not found: {self.path}")

        events = []
        with open(self.path, encoding="utf-8") as f:
            for line_number, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(ViewEvent.model_validate(json.loads(line)))
                except (json.JSONDecodeError, PydanticValidationError) as e:
                    logger.warning(f"Skipping malformed view at {self.path}:{line_number}: {e}")
        return events
