"""Append-only audit trail: hash chain writer, verifier, alerts and reports."""
