"""
schemas/ — Pydantic models for ProcureDesk request bodies, list filters
and response envelopes.
"""
