"""
Permission management feature for scope-based RBAC.

Implements:
- Permission catalog, roles, role assignments and direct grants
- Effective permission resolution down the scope hierarchy, with caching
- Audit logging and change events for every RBAC mutation
"""
