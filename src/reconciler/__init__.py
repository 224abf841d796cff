"""Reconcile engine for declaration-based infrastructure.

Builds a dependency graph from resource declarations, diffs it against the
persisted state snapshot, and executes the resulting create/update/delete
operations through provider adapters.
"""
