"""Test doubles for the orchestration engine."""
