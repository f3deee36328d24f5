"""Stage 2: Content collection.

Downloads raw content for discovered sources into the collected content directory.
"""
