"""
Artifact writer: persists generated reports as JSON or CSV files.

The file name is derived from the request id, so regenerating a request
overwrites its artifact instead of creating a second one. Files are written
to a temporary name and renamed into place.
"""

import csv
import json
import os
from pathlib import Path

from reportflow.core.errors import ReportGenerationError
from reportflow.core.models import ReportRequest
from reportflow.observability.logger import get_logger

from .strategies import ReportArtifact

logger = get_logger(__name__)


class ArtifactWriter:
    """Writes report artifacts into a reports directory."""

    def __init__(self, reports_dir: str | Path):
        self.reports_dir = Path(reports_dir)
        self.reports_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, request: ReportRequest, fmt: str) -> Path:
        return self.reports_dir / f"{request.request_id}.{fmt}"

    def write(self, request: ReportRequest, artifact: ReportArtifact, fmt: str = "json") -> str:
        """
        Write an artifact and return its reference.

        Args:
            request: The request the artifact belongs to
            artifact: Generated content
            fmt: "json" or "csv"

        Returns:
            file:// URI of the written artifact

        Raises:
            ReportGenerationError: On unsupported format or I/O failure
        """
        if fmt not in ("json", "csv"):
            raise ReportGenerationError(f"Unsupported artifact format: {fmt}")

        target = self.path_for(request, fmt)
        temp = target.with_name(f".{target.name}.tmp")

        try:
            if fmt == "json":
                self._write_json(temp, request, artifact)
            else:
                self._write_csv(temp, artifact)
            os.replace(temp, target)
        except OSError as e:
            temp.unlink(missing_ok=True)
            raise ReportGenerationError(f"Could not write artifact {target}: {e}") from e

        logger.info(
            f"Wrote {fmt} artifact for {request.request_id}",
            extra={"request_id": request.request_id, "path": str(target), "rows": len(artifact.rows)},
        )
        return target.resolve().as_uri()

    def _write_json(self, path: Path, request: ReportRequest, artifact: ReportArtifact) -> None:
        document = {
            "requestId": request.request_id,
            "reportType": request.report_type.value,
            "subjectId": request.subject_id,
            "summary": artifact.summary,
            "columns": artifact.columns,
            "rows": artifact.rows,
        }
        with open(path, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2, default=str)

    def _write_csv(self, path: Path, artifact: ReportArtifact) -> None:
        with open(path, "w", encoding="utf-8", newline="") as f:
            writer = csv.writer(f)
            writer.writerow(artifact.columns)
            for row in artifact.rows:
                writer.writerow(["" if value is None else value for value in row])
