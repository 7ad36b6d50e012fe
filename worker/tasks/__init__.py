"""
Taskiq task modules.

- delays: one-off delay task processing pass.
"""

__all__ = ["delays"]
