"""Resumable multi-phase ingestion pipeline.

Phases run in order: discovery, collection, distillation, packaging, bundling.
Every phase reads and writes the same source registry snapshot, so an
interrupted run picks up where the last saved snapshot left off.
"""
