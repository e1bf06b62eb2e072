"""Workspace sandbox & synchronization engine for CollabHub.

This package contains:
- Per-project sandbox lifecycle (registry + pluggable backends)
- A filesystem bridge with echo suppression for editor-originated writes
- A polling change watcher and a single-queue sync reconciler
- Multiplexed terminal sessions, presence and advisory file locks
"""
