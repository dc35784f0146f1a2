"""
Contracts Module

Explicit data types that form the contracts between layers. All
inter-layer communication MUST use these contracts.

DESIGN PRINCIPLES:
==================
1. All contract types are immutable (frozen dataclasses)
2. Invalid shapes fail fast at construction with ValidationError
3. All timestamps use UTC and are never mutated
4. Identity of a write is its client-generated op_id
"""
