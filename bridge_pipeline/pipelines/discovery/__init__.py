"""Stage 1: Source discovery.

Finds documentation sources and registers them as discovered records.
"""
