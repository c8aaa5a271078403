"""
Models package - Pydantic models for type-safe resource handling.

Defines data models for:
- Desired and observed workload state
- Authorization rules and workload identities
- Constraint templates and constraints
- External secret bindings and TLS material
- Route rules
"""
