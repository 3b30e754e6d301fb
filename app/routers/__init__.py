"""
API routers package
"""

from app.routers.payments import router as payments_router
from app.routers.admin import router as admin_router
