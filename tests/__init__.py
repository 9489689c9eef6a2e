"""Test suite for the stack runner."""
