"""JSON output formatter for sync run reports.

Serializes a ``RunReport`` into the report layout written after every CLI
run: aggregate totals, one entry per entity type, and the failed records
with their classified error.
"""

import json
from pathlib import Path
from typing import Any, Dict, List

from crmsync.models.data_models import RunReport, SyncResult


class JSONOutputFormatter:
    """
    Formats run reports as JSON.

    Example output structure:
    {
        "summary": {
            "entities": 2,
            "records_fetched": 120,
            "created": 100,
            "updated": 15,
            "skipped": 3,
            "errors": 2,
            "failed_entities": 0,
            "processing_time_seconds": 4.21,
            "success_rate": 0.9833,
            "started_at": "...",
            "finished_at": "..."
        },
        "entities": [
            {"entity_type": "deals", "created": 60, ..., "error_message": null}
        ],
        "errors": [
            {"entity_type": "deals", "remote_id": 17, "kind": "generic", "error": "..."}
        ]
    }
    """

    def format(self, report: RunReport) -> Dict[str, Any]:
        """
        Format a run report as a JSON-serializable dictionary.

        Args:
            report: Complete run report

        Returns:
            Dictionary with summary, entities and errors sections
        """
        return {
            "summary": self._format_summary(report),
            "entities": [self._format_result(r) for r in report.results],
            "errors": self._format_errors(report.results),
        }

    def _format_summary(self, report: RunReport) -> Dict[str, Any]:
        summary = report.summary
        return {
            "entities": summary.entities,
            "records_fetched": summary.records_fetched,
            "created": summary.created,
            "updated": summary.updated,
            "skipped": summary.skipped,
            "errors": summary.errors,
            "failed_entities": summary.failed_entities,
            "processing_time_seconds": round(summary.processing_time_seconds, 2),
            "success_rate": round(summary.success_rate, 4),
            "started_at": report.started_at,
            "finished_at": report.finished_at,
        }

    def _format_result(self, result: SyncResult) -> Dict[str, Any]:
        return {
            "entity_type": result.entity_type,
            "records_fetched": result.records_fetched,
            "created": result.created,
            "updated": result.updated,
            "skipped": result.skipped,
            "errors": result.errors,
            "success": result.success,
            "success_rate": round(result.success_rate, 4),
            "execution_time_seconds": round(result.execution_time, 3),
            "error_message": result.error_message,
        }

    def _format_errors(self, results: List[SyncResult]) -> List[Dict[str, Any]]:
        return [
            {"entity_type": result.entity_type, **item}
            for result in results
            for item in result.error_items
        ]

    def save(self, report: RunReport, path: str = "out/summary.json") -> None:
        """
        Save the formatted report to a JSON file.

        Creates parent directories if they don't exist.

        Args:
            report: Run report to save
            path: Output file path (default: out/summary.json)
        """
        output_path = Path(path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with open(output_path, 'w', encoding='utf-8') as f:
            json.dump(self.format(report), f, indent=2, ensure_ascii=False, default=str)
