"""
Hierarchy Kernel

Workflow and deadline-cascade engine for a fixed six-level approval
hierarchy:
- Deadline cascade for scheduled visits
- Approve / reject / submit state machine for information requests
- Fan-out forwarding to branch-level clones
- Append-only audit trail and version history
"""

__version__ = "0.1.0"
