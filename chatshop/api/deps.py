"""
ChatShop - FastAPI dependencies
"""
from fastapi import Request

from chatshop.services.container import Shop


def get_shop(request: Request) -> Shop:
    return request.app.state.shop
