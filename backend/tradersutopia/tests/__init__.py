"""
Test suite for the billing core.
"""
