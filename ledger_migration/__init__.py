"""
Storytelling Platform Migration Pipeline

A re-runnable batch job that seeds the hosted relational store of the
storytelling platform from the view-based external record store.

Supports:
- Complete extraction across overlapping, under-reporting source views
- Deduplication by source record ID
- Name-based reconciliation against legacy destination rows
- Dependency-ordered, idempotent writes keyed by external ID
- Content-addressed attachment (media) transfer
- Per-stage reconciliation reports
"""

__version__ = "0.1.0"
