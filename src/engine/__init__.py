"""Orchestration engine for setup operations.

Resolves a dependency-ordered plan from the operations manifest, validates
it, and executes it one operation at a time.
"""
