"""
Scope hierarchy feature module.

Read-only view of the organizational tree (organization > client > company >
department > team, plus the vendor branch) and the scope escalation guard
built on top of it.
"""
