"""
Keystone Test Suite

This directory contains tests for the Keystone reconciler:
- Unit tests for parsing, graph building, diffing, scheduling and state
- Executor tests against scripted fake providers
- Pipeline and CLI tests against the simulated cloud
"""
