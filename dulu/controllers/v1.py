from fastapi import APIRouter

from . import payments

router = APIRouter(prefix="/v1")
# payments router carries both the PawaPay callback and client polling
router.include_router(payments.router)
