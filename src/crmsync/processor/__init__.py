"""Record processing module."""

from .aggregator import SyncRunAggregator
from .normalizer import extract_remote_id, normalize_record, normalize_records
from .processor import RecordProcessor

__all__ = [
    "RecordProcessor",
    "SyncRunAggregator",
    "extract_remote_id",
    "normalize_record",
    "normalize_records",
]
