"""Core payment orchestration and reconciliation logic."""
