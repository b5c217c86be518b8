"""Scenario tests for talos-bootstrap."""
