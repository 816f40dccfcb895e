"""
Branch hierarchy feature module.

Branches form a forest through parent_branch_id. The tree module computes
descendant closures and ancestor chains; the access module layers the
cross-branch bypass convention on top of the permission engine.
"""
