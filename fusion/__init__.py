"""
Identity fusion engine.

Reconciles accounts coming from several authoritative sources into single,
deduplicated fusion identity records.

Key Components:
- core/: platform client, execution queue, pagination, config and models
- matching/: string similarity scoring
- services/: merge, refresh, correlation and review decisioning
"""

__version__ = "0.1.0"
