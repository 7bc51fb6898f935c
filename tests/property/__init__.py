"""
Stagewise - Property-Based Testing Suite

Property-based testing using Hypothesis for the migration and teardown
invariants of the bootstrap lifecycle.
"""
