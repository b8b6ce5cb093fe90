"""
ChangeDetect

Content-hash change detection over declared entity dependency graphs,
with at-least-once delivery of change notifications to external targets.
"""

__version__ = "1.0.0"
