from fastapi import APIRouter

from donor_integrity.api.routes import exchange_rates, health, integrity

api_router = APIRouter()
api_router.include_router(health.router)
api_router.include_router(exchange_rates.router)
api_router.include_router(integrity.router)
