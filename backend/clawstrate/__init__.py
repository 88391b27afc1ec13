"""Clawstrate pipeline orchestration service."""
