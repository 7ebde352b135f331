"""
orglink - enterprise quotas, organization linking and API admission control.

Multi-tenant enterprises aggregate subordinate organizations under shared
workspaces. This package computes and enforces per-enterprise quotas,
runs the consent-based link request workflow, and rate-limits API-key
and workspace traffic.
"""

__version__ = "1.0.0"
