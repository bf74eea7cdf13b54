"""
Report orchestration core: requester and worker services over an event bus.
"""

__version__ = "0.1.0"
