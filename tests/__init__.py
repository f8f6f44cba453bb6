"""Historian test suite.

- unit/: one module per library module, run against temporary directories
"""
