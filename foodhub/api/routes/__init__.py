"""API routes."""

from fastapi import APIRouter, Depends

from foodhub.api.routes import (
    auth, users, restaurants, menu, customers, orders,
    drivers, delivery, loyalty, rate_limits, tracking,
    stamp_cards, pricing, spin_wheel, challenges, feedback,
)
from foodhub.core.rate_limit import rate_limit

api_router = APIRouter()

# Every non-auth route counts against the caller's "general" tier limits
general_limits = [Depends(rate_limit("general"))]

api_router.include_router(auth.router, prefix="/auth", tags=["auth"])
api_router.include_router(auth.profile_router, tags=["auth"], dependencies=general_limits)
api_router.include_router(users.router, prefix="/users", tags=["users"], dependencies=general_limits)

# Public catalogue reads, authenticated writes
api_router.include_router(restaurants.router, tags=["restaurants"], dependencies=general_limits)
api_router.include_router(menu.router, tags=["menu"], dependencies=general_limits)

api_router.include_router(customers.router, prefix="/customers", tags=["customers"], dependencies=general_limits)
api_router.include_router(orders.router, prefix="/orders", tags=["orders"], dependencies=general_limits)
api_router.include_router(pricing.router, prefix="/pricing", tags=["pricing"], dependencies=general_limits)
api_router.include_router(drivers.router, tags=["drivers"], dependencies=general_limits)
api_router.include_router(delivery.router, prefix="/delivery", tags=["delivery"], dependencies=general_limits)
api_router.include_router(loyalty.router, tags=["loyalty"], dependencies=general_limits)

# Customer rewards and engagement
api_router.include_router(stamp_cards.router, tags=["stamp-cards"], dependencies=general_limits)
api_router.include_router(spin_wheel.router, prefix="/spin-wheel", tags=["spin-wheel"], dependencies=general_limits)
api_router.include_router(challenges.router, prefix="/challenges", tags=["challenges"], dependencies=general_limits)
api_router.include_router(feedback.router, tags=["feedback"], dependencies=general_limits)

api_router.include_router(rate_limits.router, prefix="/rate-limit", tags=["rate-limit"], dependencies=general_limits)
api_router.include_router(tracking.router, prefix="/tracking", tags=["tracking"], dependencies=general_limits)
