"""Requester side: request gateway, status reconciler and pending sweep."""

from .gateway import RequestGateway
from .reconciler import CompletionNotifier, StatusReconciler
from .sweep import PendingRequestSweeper

__all__ = [
    "CompletionNotifier",
    "PendingRequestSweeper",
    "RequestGateway",
    "StatusReconciler",
]
