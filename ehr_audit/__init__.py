"""
EHR Audit

Tamper-evident, PHI-redacting audit logging for EHR services.
Each channel is an append-only JSON Lines file whose records are
linked by a SHA-256 hash chain.
"""

__version__ = "1.0.0"
