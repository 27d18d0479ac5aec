"""Test suite for the clinical research platform."""
