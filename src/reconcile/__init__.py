"""Reconciliation engine for declared cloud resources.

Builds a dependency graph from a description, diffs it against recorded
state, schedules the resulting operations into parallel batches and
applies them through the backend bound to each resource kind.
"""
