"""ドメインサービス

LifecycleCoordinatorはinfrastructure.storeに依存するため
domain.services.lifecycle_coordinator から直接importする。
"""

from .edit_classifier import EditClassifier, classify
from .transcript_scanner import EntryAttributor, TranscriptScan, find_spawn_candidates, scan

__all__ = [
    'EditClassifier',
    'EntryAttributor',
    'TranscriptScan',
    'classify',
    'find_spawn_candidates',
    'scan',
]
