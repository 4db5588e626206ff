from fastapi import Request

from plangate.features.wiring import Services


def get_services(request: Request) -> Services:
    """Services built at startup and stored on app.state."""
    return request.app.state.services
