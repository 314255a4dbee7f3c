"""
Peritagem Lifecycle Module

Inspection lifecycle service for hydraulic-cylinder repair. Tracks each
cylinder ("peritagem") from intake through technical inspection, internal
approval, client/commercial approval, workshop repair, final review and
finalization.

Components:
- status_model: canonical stages and the status canonicalizer
  * Six LOCKED stages (created, PCP approval, client approval, workshop,
    final review, finalized)
  * Legacy/inconsistent status strings mapped to stages
  * Unknown strings default to stage 1 (never raises)
- lifecycle_engine: transition authority
  * Fixed sequence 1 -> 2 -> 3 -> 4 -> 5 -> 6 plus the 2 -> 1 revision edge
  * Role-gated transitions, clients are read-only
  * Stage 6 is terminal
- history_recorder: append-only audit trail of committed transitions
- timeline_builder: per-stage completed/active/pending view with
  synthesized entries for missing history
- inspection_store / supabase_store: storage collaborators
  (in-memory, JSONL files, hosted Postgres REST API)
- inspection_service: orchestration of reads, writes and audit entries
- intake_queue: cylinders received and awaiting inspection
- main / inspection_router: FastAPI HTTP surface
"""

__version__ = "1.4.0"

SERVICE_NAME = "Peritagem Lifecycle Service"
