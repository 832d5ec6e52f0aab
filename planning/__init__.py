"""Forecast reconciliation and distribution engine (UI-agnostic).

This package contains:
- period canonicalization and product unit attributes
- the multi-source record merge (forecast + commercial overrides)
- YTD / YTG / Total rollups under unit multipliers
- location resolution and aggregate-edit distribution
- persistence adapters (in-memory, SQLAlchemy)
"""
