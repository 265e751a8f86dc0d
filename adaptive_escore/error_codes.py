"""Stable failure and anomaly codes.

Used by: store (wrapped I/O errors), controller (per-key failure logging),
safety (anomaly_type), optimization log rows.
"""

# Storage collaborator
FETCH_FAILED = "FETCH_FAILED"          # Reading feedback / history failed
PERSIST_FAILED = "PERSIST_FAILED"      # Writing history / log failed (audit-trail loss)

# Controller
CYCLE_FAILED = "CYCLE_FAILED"          # Per-key cycle aborted; synthetic failed result used

# Optimizer / safety
INSUFFICIENT_DATA = "insufficient_data"
SUCCESS_RATE_DROP = "success_rate_drop"
ACOS_DEGRADATION = "acos_degradation"
NO_ANOMALY = "none"
