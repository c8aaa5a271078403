"""
Tests package - Test suite for the mesh operator.

Contains:
- unit/: Unit tests for individual components
- fixtures/: Test data and mock resources
"""
