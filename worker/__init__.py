"""
Taskiq worker package for the flow engine.

Provides broker configuration and the background delay poller that resumes
executions once their wait period has elapsed.

Run with:
    taskiq worker worker.broker:broker worker.tasks.delays
"""

__all__ = ["broker"]
