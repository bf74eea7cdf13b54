"""
Unit tests for report generation strategies, the view datasets and the
artifact writer.
"""

import csv
import json
from datetime import datetime, timezone
from pathlib import Path
from urllib.parse import urlparse

import pytest

from reportflow.core.errors import ReportGenerationError
from reportflow.core.models import ReportRequest, parse_parameters
from reportflow.worker import (
    ArtifactWriter,
    InMemoryViewDataset,
    JsonLinesViewDataset,
    MovieAnalysisStrategy,
    ReportArtifact,
    TrendReportStrategy,
    UserStatsStrategy,
    normalize_rating,
)


def make_request(report_type, subject_id=None, parameters=None, created_at=None):
    return ReportRequest(
        request_id="req-1",
        report_type=report_type,
        subject_id=subject_id,
        parameters=parameters or {},
        requested_by="analyst",
        created_at=created_at or datetime(2025, 11, 17, 12, 0, tzinfo=timezone.utc),
    )


def run(strategy, request):
    return strategy.generate(request, request.typed_parameters(), strategy.fetch(request))


@pytest.mark.parametrize("value, expected", [
    ("8.8/10", 88.0),
    ("87%", 87.0),
    ("74/100", 74.0),
    (" 7 / 10 ", 70.0),
    ("N/A", None),
    ("", None),
    ("5/0", None),
    (None, None),
])
def test_normalize_rating(value, expected):
    assert normalize_rating(value) == expected


class TestMovieAnalysis:

    @pytest.fixture
    def strategy(self, fake_provider):
        # The cache only needs get(); the provider double provides fetch()
        class DirectCache:
            def get(self, subject_id):
                return fake_provider.fetch(subject_id)

        return MovieAnalysisStrategy(DirectCache())

    def test_rows_and_summary(self, strategy):
        artifact = run(strategy, make_request("movie-analysis", "tt1234567"))
        rows = dict(artifact.rows)

        assert artifact.columns == ["metric", "value"]
        assert rows["title"] == "The Example"
        assert rows["genres"] == "Action|Adventure|Sci-Fi"
        assert rows["runtime_minutes"] == 148
        assert rows["box_office_usd"] == 292587330
        assert rows["imdb_votes"] == 2512345
        assert rows["rating:Internet Movie Database"] == 88.0
        assert rows["rating:Rotten Tomatoes"] == 87.0
        assert rows["rating:Metacritic"] == 74.0
        assert rows["average_rating"] == 83.0
        assert artifact.summary["rating_sources"] == 3

    def test_ratings_can_be_excluded(self, strategy):
        artifact = run(strategy, make_request("movie-analysis", "tt1234567", {"includeRatings": False}))

        metrics = [row[0] for row in artifact.rows]
        assert "average_rating" not in metrics
        assert not any(metric.startswith("rating:") for metric in metrics)

    def test_falls_back_to_imdb_rating(self, strategy, fake_provider):
        fake_provider.payloads["tt7"] = {"Title": "Old", "imdbRating": "6.5", "Ratings": []}

        rows = dict(run(strategy, make_request("movie-analysis", "tt7")).rows)

        assert rows["rating:Internet Movie Database"] == 65.0
        assert rows["runtime_minutes"] is None

    def test_payload_without_title_fails(self, strategy, fake_provider):
        fake_provider.payloads["tt8"] = {"Year": "1999"}

        with pytest.raises(ReportGenerationError):
            run(strategy, make_request("movie-analysis", "tt8"))

    def test_output_is_deterministic(self, strategy):
        request = make_request("movie-analysis", "tt1234567")
        assert run(strategy, request) == run(strategy, request)


class TestTrendReport:

    def test_ranks_titles_within_window(self, view_events):
        strategy = TrendReportStrategy(InMemoryViewDataset(view_events))

        artifact = run(strategy, make_request("trend-report", parameters={"periodDays": 30}))

        assert artifact.columns == ["rank", "movie_id", "title", "views", "average_rating"]
        assert artifact.rows == [
            [1, "tt1", "Alpha", 4, 8.0],
            [2, "tt2", "Beta", 2, 6.0],
            [3, "tt3", "Gamma", 1, None],
        ]
        assert artifact.summary["total_views"] == 7
        assert artifact.summary["distinct_titles"] == 3

    def test_limit_and_longer_window(self, view_events):
        strategy = TrendReportStrategy(InMemoryViewDataset(view_events))

        artifact = run(strategy, make_request("trend-report", parameters={"periodDays": 60, "limit": 1}))

        assert artifact.rows == [[1, "tt1", "Alpha", 4, 8.0]]
        assert artifact.summary["total_views"] == 8

    def test_window_is_anchored_on_request_time(self, view_events):
        strategy = TrendReportStrategy(InMemoryViewDataset(view_events))
        request = make_request("trend-report", created_at=datetime(2024, 1, 1, tzinfo=timezone.utc))

        assert run(strategy, request).rows == []


class TestUserStats:

    def test_statistics_for_one_user(self, view_events):
        strategy = UserStatsStrategy(InMemoryViewDataset(view_events))

        rows = dict(run(strategy, make_request("user-stats", "u1")).rows)

        assert rows["total_views"] == 3
        assert rows["distinct_titles"] == 2
        assert rows["ratings_given"] == 2
        assert rows["average_rating"] == 7.0
        assert rows["top_title"] == "Alpha"

    def test_unknown_user_has_empty_statistics(self, view_events):
        strategy = UserStatsStrategy(InMemoryViewDataset(view_events))

        rows = dict(run(strategy, make_request("user-stats", "nobody")).rows)

        assert rows["total_views"] == 0
        assert rows["average_rating"] is None
        assert rows["top_title"] is None


class TestJsonLinesViewDataset:

    def test_reads_valid_lines_and_skips_malformed(self, tmp_path):
        path = tmp_path / "views.jsonl"
        path.write_text(
            '{"userId": "u1", "movieId": "tt1", "title": "Alpha", "rating": 8, "viewedAt": "2025-11-10T10:00:00Z"}\n'
            "not json\n"
            "\n"
            '{"userId": "u2", "movieId": "tt2", "title": "Beta", "rating": 11, "viewedAt": "2025-11-10T10:00:00Z"}\n'
        )

        views = list(JsonLinesViewDataset(path).views())

        assert [view.user_id for view in views] == ["u1"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(ReportGenerationError):
            JsonLinesViewDataset(tmp_path / "absent.jsonl").views()


class TestArtifactWriter:

    @pytest.fixture
    def artifact(self):
        return ReportArtifact(
            columns=["metric", "value"],
            rows=[["title", "The Example"], ["box_office_usd", None]],
            summary={"title": "The Example"},
        )

    def test_json_artifact(self, tmp_path, artifact):
        writer = ArtifactWriter(tmp_path / "reports")
        request = make_request("movie-analysis", "tt1234567")

        ref = writer.write(request, artifact, "json")

        path = Path(urlparse(ref).path)
        assert path == (tmp_path / "reports" / "req-1.json").resolve()
        document = json.loads(path.read_text())
        assert document["requestId"] == "req-1"
        assert document["reportType"] == "movie-analysis"
        assert document["rows"] == [["title", "The Example"], ["box_office_usd", None]]

    def test_csv_artifact(self, tmp_path, artifact):
        writer = ArtifactWriter(tmp_path)
        ref = writer.write(make_request("movie-analysis", "tt1234567"), artifact, "csv")

        with open(urlparse(ref).path, newline="") as f:
            rows = list(csv.reader(f))
        assert rows == [["metric", "value"], ["title", "The Example"], ["box_office_usd", ""]]

    def test_rewrite_replaces_existing_artifact(self, tmp_path, artifact):
        writer = ArtifactWriter(tmp_path)
        request = make_request("movie-analysis", "tt1234567")

        first = writer.write(request, artifact)
        second = writer.write(request, artifact)

        assert first == second
        assert sorted(p.name for p in tmp_path.iterdir()) == ["req-1.json"]

    def test_unsupported_format(self, tmp_path, artifact):
        with pytest.raises(ReportGenerationError):
            ArtifactWriter(tmp_path).write(make_request("movie-analysis", "tt1"), artifact, "xml")


def test_parameters_round_trip_through_request():
    typed = parse_parameters("trend-report", {"period_days": 7})
    request = make_request("trend-report", parameters=typed.model_dump(by_alias=True, mode="json"))
    assert request.typed_parameters() == typed
