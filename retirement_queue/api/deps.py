"""
API dependencies
"""
from fastapi import Request

from retirement_queue.services.container import Services


def get_services(request: Request) -> Services:
    """Service container built at startup (or injected by tests)."""
    return request.app.state.services
