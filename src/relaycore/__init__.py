"""relaycore: deterministic fact/match/summary dataflow with KPI snapshots."""

__version__ = "0.1.0"
