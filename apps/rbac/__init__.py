"""
RBAC (Role-Based Access Control) application.

Provides the permission core for CareerPath:
- Permission catalog of modules and action types
- Roles, role assignments and per-user overrides with optional expiry
- Permission resolution with system-administrator bypass
- Append-only audit logging of every access change
"""
