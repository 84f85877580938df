"""Resource model, point-in-time recovery and peer discovery for Percona XtraDB Cluster."""

__version__ = "0.1.0"