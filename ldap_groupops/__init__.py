"""
LDAP Group Ops - Batch group lifecycle, membership and organisation jobs for Active Directory.

This package resolves job targets against the directory, applies one operation per
target (or per member and group pair), and reports a per-item outcome table with a
single success, warning or error verdict.
"""

__version__ = "1.0.0"
__author__ = "LDAP Group Ops Team"
