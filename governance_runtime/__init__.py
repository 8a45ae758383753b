"""
Reliability and continuation governance runtime.

Contract validation, rule-first repair, continuation gating, audit emission
and the lineage-tracked artifact pipeline.
"""

__version__ = "0.1.0"
