"""
Change-Control Core

The maker-checker kernel of a multi-branch manufacturing ERP:
- Permission resolution over a nav catalogue with role defaults and overrides
- Approval gating, queueing and replay of approved payloads
- BOM lifecycle (draft, pending, approved, versioned) with canonical snapshots
- Branch/period gating and an audit trail with decision events
"""

__version__ = "0.1.0"
