"""Service Lifecycle Controller (SLC).

Single-process controller for one containerized application topology
(database, API backend, web frontend) that handles:
 - dependency-ordered startup gated on health
 - debounced health probing
 - rolling updates with automatic rollback
 - bounded scaling
 - scheduled database backups

The container runtime is an injected orchestrator; a Docker implementation
ships in :mod:`slc.orchestrator`.
"""
