"""Tests for ML platform components.

This package contains lightweight, illustrative tests that validate basic
configuration, metrics, and vector-store interfaces. Extend with integration
tests where external dependencies are available.
"""
