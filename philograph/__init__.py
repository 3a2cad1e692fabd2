"""
PhiloGraph - Cross-Store Concept Coordinator

Coordinates creation, synthesis and bidirectional transformation of
philosophical concepts split across three stores:
- Relational store: Concept metadata (authoritative for concept lifecycle)
- Graph store: Categories and Relationships
- Document store: Theses and synthesis provenance

CORE CONTRACTS:
- Saga with compensation: no cross-store atomicity, only ordered steps + undo
- No partial concept visible: caches invalidated only after committed writes
- Reasoning service behind a circuit breaker, responses cached by content hash
- Every synthesized element carries exactly one provenance record
"""

__version__ = "1.0.0"
