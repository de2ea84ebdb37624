"""Workflow engine for the Mission Control task board.

This package holds the task/epic/agent model, the file-backed store, and the
engine that keeps dependency edges, epic progress, activity logs and
notifications consistent with every task mutation.
"""
