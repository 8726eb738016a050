"""
Bounded-memory streaming import.

    from membound.importer import StreamingImporter, SequenceSource

    importer = StreamingImporter(batch_size=50, memory_ceiling_mb=256)
    result = importer.run(SequenceSource(rows), handler=store_row)
    print(f"{result.processed_count} processed, {result.error_count} failed")
"""

from .sources import (
    ContentSource,
    DatabaseTableSource,
    HttpPageSource,
    Page,
    SequenceSource,
    create_source,
)
from .stream import (
    CancellationToken,
    ImportChunk,
    ImportResult,
    ItemResult,
    StreamState,
    StreamingImporter,
)

__all__ = [
    'ContentSource',
    'DatabaseTableSource',
    'HttpPageSource',
    'Page',
    'SequenceSource',
    'create_source',
    'CancellationToken',
    'ImportChunk',
    'ImportResult',
    'ItemResult',
    'StreamState',
    'StreamingImporter',
]
