"""Cadence — persistent task scheduling and execution engine."""
