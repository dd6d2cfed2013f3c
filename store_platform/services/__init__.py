"""Cluster, helm, persistence and orchestration services."""
