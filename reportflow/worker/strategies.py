"""
Report generation strategies, one per report type.

Each strategy runs in two phases that map onto the orchestrator's state
machine: fetch() obtains the input data (fetching), generate() turns it
into a tabular ReportArtifact (generating). Output depends only on the
immutable request and the fetched data, so a re-run yields the same
artifact.
"""

import re
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Optional

from reportflow.core.errors import ReportGenerationError
from reportflow.core.models import (
    MovieAnalysisParameters,
    ReportParameters,
    ReportRequest,
    ReportType,
    TrendReportParameters,
)

from .cache import ExternalDataCache
from .dataset import ViewDataset

_FRACTION = re.compile(r'^\s*([0-9]+(?:\.[0-9]+)?)\s*/\s*([0-9]+(?:\.[0-9]+)?)\s*$')
_PERCENT = re.compile(r'^\s*([0-9]+(?:\.[0-9]+)?)\s*%\s*$')
_RUNTIME = re.compile(r'^\s*([0-9]+)\s*min')


@dataclass
class ReportArtifact:
    """Tabular report content plus a small summary mapping."""

    columns: list[str]
    rows: list[list[Any]]
    summary: dict[str, Any] = field(default_factory=dict)


def normalize_rating(value: str) -> Optional[float]:
    """
    Convert a provider rating onto a 0-100 scale.

    Examples:
        >>> normalize_rating("8.8/10")
        88.0
        >>> normalize_rating("87%")
        87.0
        >>> normalize_rating("74/100")
        74.0
        >>> normalize_rating("N/A") is None
        True
    """
    if not isinstance(value, str):
        return None

    match = _FRACTION.match(value)
    if match:
        score, scale = float(match.group(1)), float(match.group(2))
        if scale <= 0:
            return None
        return round(score / scale * 100, 1)

    match = _PERCENT.match(value)
    if match:
        return round(float(match.group(1)), 1)

    return None


def _parse_runtime(value: Any) -> Optional[int]:
    match = _RUNTIME.match(value) if isinstance(value, str) else None
    return int(match.group(1)) if match else None


def _parse_money(value: Any) -> Optional[int]:
    if not isinstance(value, str):
        return None
    digits = re.sub(r'[^0-9]', '', value)
    return int(digits) if digits else None


def _parse_count(value: Any) -> Optional[int]:
    if not isinstance(value, str):
        return None
    digits = value.replace(",", "")
    return int(digits) if digits.isdigit() else None


class GenerationStrategy:
    """Base class for report generation strategies."""

    report_type: ReportType

    def fetch(self, request: ReportRequest) -> Any:
        raise NotImplementedError

    def generate(self, request: ReportRequest, parameters: ReportParameters, data: Any) -> ReportArtifact:
        raise NotImplementedError


class MovieAnalysisStrategy(GenerationStrategy):
    """Analysis of a single movie, using provider data through the cache."""

    report_type = ReportType.MOVIE_ANALYSIS

    def __init__(self, cache: ExternalDataCache):
        self.cache = cache

    def fetch(self, request: ReportRequest) -> dict[str, Any]:
        return self.cache.get(request.subject_id)

    def generate(self, request: ReportRequest, parameters: MovieAnalysisParameters, data: dict[str, Any]) -> ReportArtifact:
        title = data.get("Title")
        if not title:
            raise ReportGenerationError(f"Provider payload for {request.subject_id} has no title")

        genres = [g.strip() for g in str(data.get("Genre", "")).split(",") if g.strip() and g.strip() != "N/A"]
        rows: list[list[Any]] = [
            ["title", title],
            ["year", data.get("Year")],
            ["genres", "|".join(genres)],
            ["runtime_minutes", _parse_runtime(data.get("Runtime"))],
            ["box_office_usd", _parse_money(data.get("BoxOffice"))],
            ["imdb_votes", _parse_count(data.get("imdbVotes"))],
        ]

        summary: dict[str, Any] = {"title": title, "genres": genres}

        if parameters.include_ratings:
            scores = {}
            for rating in data.get("Ratings") or []:
                source = rating.get("Source")
                score = normalize_rating(rating.get("Value"))
                if source and score is not None:
                    scores[source] = score
            if not scores:
                imdb = normalize_rating(f"{data.get('imdbRating')}/10")
                if imdb is not None:
                    scores["Internet Movie Database"] = imdb

            for source, score in sorted(scores.items()):
                rows.append([f"rating:{source}", score])

            average = round(sum(scores.values()) / len(scores), 1) if scores else None
            rows.append(["average_rating", average])
            summary["average_rating"] = average
            summary["rating_sources"] = len(scores)

        return ReportArtifact(columns=["metric", "value"], rows=rows, summary=summary)


class TrendReportStrategy(GenerationStrategy):
    """Most-viewed titles over a trailing period of the local dataset."""

    report_type = ReportType.TREND_REPORT

    def __init__(self, dataset: ViewDataset):
        self.dataset = dataset

    def fetch(self, request: ReportRequest):
        return list(self.dataset.views())

    def generate(self, request: ReportRequest, parameters: TrendReportParameters, data) -> ReportArtifact:
        # Window is anchored on the request's creation time so re-runs agree
        window_end = request.created_at
        window_start = window_end - timedelta(days=parameters.period_days)

        counts: Counter = Counter()
        titles: dict[str, str] = {}
        ratings: dict[str, list[float]] = defaultdict(list)
        for view in data:
            viewed_at = view.viewed_at
            if viewed_at.tzinfo is None:
                viewed_at = viewed_at.replace(tzinfo=window_end.tzinfo)
            if not (window_start <= viewed_at <= window_end):
                continue
            counts[view.movie_id] += 1
            titles[view.movie_id] = view.title
            if view.rating is not None:
                ratings[view.movie_id].append(view.rating)

        ranked = sorted(counts.items(), key=lambda item: (-item[1], titles[item[0]], item[0]))
        rows = []
        for rank, (movie_id, views) in enumerate(ranked[:parameters.limit], start=1):
            movie_ratings = ratings.get(movie_id)
            average = round(sum(movie_ratings) / len(movie_ratings), 2) if movie_ratings else None
            rows.append([rank, movie_id, titles[movie_id], views, average])

        return ReportArtifact(
            columns=["rank", "movie_id", "title", "views", "average_rating"],
            rows=rows,
            summary={
                "period_days": parameters.period_days,
                "window_start": window_start.isoformat(),
                "window_end": window_end.isoformat(),
                "total_views": sum(counts.values()),
                "distinct_titles": len(counts),
            },
        )


class UserStatsStrategy(GenerationStrategy):
    """Viewing statistics for one user from the local dataset."""

    report_type = ReportType.USER_STATS

    def __init__(self, dataset: ViewDataset):
        self.dataset = dataset

    def fetch(self, request: ReportRequest):
        return [view for view in self.dataset.views() if view.user_id == request.subject_id]

    def generate(self, request: ReportRequest, parameters: ReportParameters, data) -> ReportArtifact:
        rated = [view.rating for view in data if view.rating is not None]
        per_title = Counter(view.title for view in data)
        first_view = min((view.viewed_at for view in data), default=None)
        last_view = max((view.viewed_at for view in data), default=None)
        top_title = sorted(per_title.items(), key=lambda item: (-item[1], item[0]))[0][0] if per_title else None

        rows = [
            ["total_views", len(data)],
            ["distinct_titles", len(per_title)],
            ["ratings_given", len(rated)],
            ["average_rating", round(sum(rated) / len(rated), 2) if rated else None],
            ["first_view", first_view.isoformat() if first_view else None],
            ["last_view", last_view.isoformat() if last_view else None],
            ["top_title", top_title],
        ]
        return ReportArtifact(
            columns=["metric", "value"],
            rows=rows,
            summary={"user_id": request.subject_id, "total_views": len(data)},
        )


def build_strategies(cache: ExternalDataCache, dataset: ViewDataset) -> dict[ReportType, GenerationStrategy]:
    """Dispatch table from report type to strategy."""
    return {
        ReportType.MOVIE_ANALYSIS: MovieAnalysisStrategy(cache),
        ReportType.TREND_REPORT: TrendReportStrategy(dataset),
        ReportType.USER_STATS: UserStatsStrategy(dataset),
    }
