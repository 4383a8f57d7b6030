"""CSV export of the result sink."""

import csv
from datetime import datetime
from pathlib import Path
from typing import Optional

from shared.logging import get_logger

from .models import ResultRecord

log = get_logger("orchestrator", "export")

HEADERS = [
    "Person Name(s)",
    "Company Name",
    "Client Website",
    "Confidence",
    "Reasoning",
    "Job URL",
    "Job ID",
    "Parent ID",
]


def _row(record: ResultRecord) -> list:
    return [
        record.person_name,
        record.company_name,
        record.client_website,
        record.confidence,
        record.reasoning,
        record.job_url,
        record.job_id,
        record.parent_id,
    ]


class CsvExporter:
    """Writes result records to a timestamped CSV file."""

    def __init__(self, export_dir: Path):
        self.export_dir = Path(export_dir)

    def export(self, records: list[ResultRecord], now: Optional[datetime] = None) -> Optional[Path]:
        """
        Write records to extraction-<date>-<time>.csv.

        Returns the file path, or None when there is nothing to export.
        """
        if not records:
            log.info("orchestrator.export.nothing_to_export")
            return None

        now = now or datetime.now()
        self.export_dir.mkdir(parents=True, exist_ok=True)
        path = self.export_dir / f"extraction-{now:%Y-%m-%d-%H%M%S}.csv"

        with open(path, "w", encoding="utf-8", newline="") as f:
            writer = csv.writer(f)
            writer.writerow(HEADERS)
            for record in records:
                writer.writerow(_row(record))

        log.info("orchestrator.export.written", path=str(path), rows=len(records))
        return path
