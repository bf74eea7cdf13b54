"""Worker side: report orchestration, data fetching and artifact generation."""

from .artifacts import ArtifactWriter
from .cache import ExternalDataCache
from .dataset import InMemoryViewDataset, JsonLinesViewDataset, ViewDataset, ViewEvent
from .idempotency import RecentRequestGuard, RequestState
from .orchestrator import ReportOrchestrator
from .provider import MovieDataProvider, OmdbMovieProvider
from .strategies import (
    GenerationStrategy,
    MovieAnalysisStrategy,
    ReportArtifact,
    TrendReportStrategy,
    UserStatsStrategy,
    build_strategies,
    normalize_rating,
)

__all__ = [
    "ArtifactWriter",
    "ExternalDataCache",
    "GenerationStrategy",
    "InMemoryViewDataset",
    "JsonLinesViewDataset",
    "MovieAnalysisStrategy",
    "MovieDataProvider",
    "OmdbMovieProvider",
    "RecentRequestGuard",
    "ReportArtifact",
    "ReportOrchestrator",
    "RequestState",
    "TrendReportStrategy",
    "UserStatsStrategy",
    "ViewDataset",
    "ViewEvent",
    "build_strategies",
    "normalize_rating",
]
