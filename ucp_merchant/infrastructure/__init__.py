"""Infrastructure layer module.

Contains configuration, logging, persistence and payment provider adapters.
"""
