"""API routes package.

Routers by domain, all registered in main.py under the /api prefix:

- health: health check
- programs: program catalog with current prices
- bookings: participant info, price lock and slot hold
- payments: provider callbacks, confirm and fail
- reservations: member reservations and cancellation
- refunds: refund requests and admin approval
- webhooks: provider notifications
"""

from coop_api.routes.bookings import router as bookings_router
from coop_api.routes.health import router as health_router
from coop_api.routes.payments import router as payments_router
from coop_api.routes.programs import router as programs_router
from coop_api.routes.refunds import router as refunds_router
from coop_api.routes.reservations import router as reservations_router
from coop_api.routes.webhooks import router as webhooks_router

__all__ = [
    "bookings_router",
    "health_router",
    "payments_router",
    "programs_router",
    "refunds_router",
    "reservations_router",
    "webhooks_router",
]
