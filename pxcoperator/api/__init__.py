"""Cluster, backup and restore resources with their validation and defaults."""