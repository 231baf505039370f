"""Test helpers shared across the allotment test suite."""
