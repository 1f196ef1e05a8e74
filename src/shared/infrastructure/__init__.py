"""
Infrastructure Layer
=====================

Low-level technical concerns shared by all modules:
- Structured JSON logging setup
- Correlation-aware loggers and latency timing
"""
