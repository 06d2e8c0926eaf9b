"""Test suite for vec3buf.

This package contains:
- Unit tests for the context / queue boundary and the layout strategies
- Behavioural tests for Vector3Buffer across layouts, precisions and fill paths
- A CPU run of the end-to-end smoke test
"""
