"""Stages 4 and 5: Packaging and bundling.

Groups distilled output by Minecraft version into a versioned package, then
archives the package for distribution.
"""
