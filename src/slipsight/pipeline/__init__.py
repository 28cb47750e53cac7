"""
SlipSight Pipeline - Producers and the write path they share.

- coordinator: Per-recording merge of concurrent submits
- indexer: Filesystem sweep producing skeleton records
- scorer: Session-ended handler producing full statistics
"""

from slipsight.pipeline.coordinator import ConsistencyCoordinator, Producer

__all__ = ["ConsistencyCoordinator", "Producer"]
