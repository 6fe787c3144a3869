"""
Pilot-light disaster recovery control plane.

Health probing, failover decisions, table backups and replica validation for
a service running in a primary region with a warm standby region.
"""

__version__ = "0.1.0"
