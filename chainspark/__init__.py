"""
ChainSpark Contribution Engine

Collaborative "sparks": short ideas built by appending ordered text
fragments to a shared chain until it holds five fragments, after which
the completed idea is open for likes, dislikes and comments.

LAYER STRUCTURE:
================

1. CONTRACTS (contracts/)
   - Frozen data types shared by every layer: Chain, Fragment, Idea,
     PendingOperation, SyncRecord, error taxonomy, domain events
   - MUST NOT: Perform I/O or hold state

2. DOMAIN (domain/)
   - Pure chain rules and document transforms, persisted record codec
   - MUST NOT: Touch storage or emit notifications

3. STORAGE (storage/)
   - Remote document store with conditioned writes and change feed
   - Local durable key/value store
   - MUST NOT: Execute business logic

4. SYNC COORDINATOR (sync/)
   - The ONLY writer of Local and the ONLY issuer of conditioned writes
     to Remote; queues offline writes and replays them idempotently

5. CHAIN CONTRIBUTION ENGINE (core/)
   - Validates and appends fragments, detects completion, emits
     ChainCompleted exactly once per chain

6. ENGAGEMENT AGGREGATOR (engagement/)
   - Likes, dislikes and comments on completed ideas

7. NOTIFICATIONS & OBSERVABILITY (notifications/, observability/)
   - At-most-once UI notifications, audit log, metrics

CONSTRAINTS ENFORCED:
=====================
- Fragments are append-only and immutable once accepted
- Completed is a terminal, one-way status
- Every queued write carries a client-generated idempotency key
- Exactly one notification per terminal outcome
"""

__version__ = "0.1.0"
