"""
Permission management feature module.

Implements branch-scoped Role-Based Access Control with per-user grant/revoke
overrides. The resolution engine lives in `resolver`; the stores it reads are
`catalog`, `roles` and `assignments`.
"""
