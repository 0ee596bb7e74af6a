"""
TierArchive - tiered archival and retrieval engine for hot/cold record storage.

Records are written to a low-latency hot store. Once they cross an age
threshold they are moved to a low-cost cold object store, and reads are
served transparently from whichever tier holds them.

Architecture:
    ┌──────────┐   write    ┌─────────────┐
    │  Caller  │──────────▶│  Hot store  │◀──────────────┐
    └────┬─────┘            └──────┬──────┘               │
         │ read                    │ scan / change feed   │ delete (after verify)
         ▼                         ▼                      │
    ┌──────────┐            ┌─────────────┐        ┌──────┴───────┐
    │ Retrieval│            │  Trigger +  │──────▶│ Orchestrator │
    │ Gateway  │            │  Scanner    │ chunks │  (workers)   │
    └────┬─────┘            └─────────────┘        └──────┬───────┘
         │ hot → cache → cold                             │ put + verify
         ▼                                                ▼
    ┌──────────┐                                   ┌─────────────┐
    │  Cache   │◀─────────── populate ────────────│ Cold store  │
    └──────────┘                                   └─────────────┘
                                                   failures ─▶ Dead-letter sink

Invariants:
    - A record is deleted from hot only after its cold copy is verified
    - A read never reports not-found while either tier holds the record
    - Re-archiving an archived record is a no-op
    - The cache is never a source of truth

How to change safely:
    - Keep the cold document format versioned (see models.py)
    - New backends must implement the protocols in stores/base.py
    - Never reorder the write/verify/delete steps in the orchestrator
"""

from ._version import __version__

__all__ = ["__version__"]
