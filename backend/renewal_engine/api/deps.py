"""Shared route dependencies"""
from fastapi import Request

from renewal_engine.services.container import BillingServices


def get_services(request: Request) -> BillingServices:
    """Billing services built in the application lifespan"""
    return request.app.state.services
