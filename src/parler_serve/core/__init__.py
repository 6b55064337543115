"""
Core Infrastructure for parler-serve.

This package provides foundational components:
    - config.py: Configuration loading and validation
    - device.py: Compute backend selection
    - errors.py: Error taxonomy and codes
    - logging/: Structured logging with numeric levels
    - metrics.py: Prometheus metrics collection
    - resources.py: Process CPU/RAM snapshot
"""
