from mls_geo.models.processing import CompletedFile, SnapshotRecord

__all__ = [
    "SnapshotRecord",
    "CompletedFile",
]
