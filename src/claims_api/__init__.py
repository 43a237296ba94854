"""
Insurance claims REST backend.

Modules:
- policy_tree: policy type taxonomy (validation, traversal, lookup, insertion, analytics)
- db: PostgreSQL connection pooling + query helpers
- auth_utils: password hashing and JWT auth helpers
- schemas: Pydantic models for the REST API
- policies, claims, customers, employees: API routers
- rate_limit, logging_config: request middleware
"""
