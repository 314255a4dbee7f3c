"""
Test Suite for the Peritagem Lifecycle Service

- status / lifecycle / timeline units
- stores (in-memory, JSONL, Supabase over a mock transport)
- service, intake queue and HTTP API
"""
