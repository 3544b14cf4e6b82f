import asyncio
import logging
from typing import Optional

from pydantic import BaseModel, Field

from outfit_studio import config
from outfit_studio.accounts import AccountGateway
from outfit_studio.models import CreditPackage, UserAccount

logger = logging.getLogger(__name__)

CREDIT_PACKAGES = [
    CreditPackage(
        id="starter",
        name="Starter",
        credits=50,
        price=4.99,
        features=["50 Image Generations", "Standard Speed", "No Expiry"],
    ),
    CreditPackage(
        id="pro",
        name="Pro Value",
        credits=120,
        price=9.99,
        popular=True,
        features=["120 Image Generations", "Priority Processing", "Commercial License"],
    ),
    CreditPackage(
        id="studio",
        name="Studio Power",
        credits=500,
        price=29.99,
        features=["500 Image Generations", "Top Priority", "Commercial License", "Bulk Generation"],
    ),
]


# Mock card form, nothing is charged
class PaymentDetails(BaseModel):
    cardNumber: str = Field(..., min_length=1)
    expiry: str = Field(..., min_length=1)
    cvc: str = Field(..., min_length=1)


def find_package(package_id: str) -> Optional[CreditPackage]:
    for package in CREDIT_PACKAGES:
        if package.id == package_id:
            return package
    return None


async def purchase_package(
    gateway: AccountGateway,
    account: UserAccount,
    package: CreditPackage,
    payment: PaymentDetails,
    processing_delay: float = config.PAYMENT_PROCESSING_DELAY_SECONDS,
) -> int:
    """Simulate a card payment, then credit the package. Returns the new balance."""
    logger.info(f"Processing mock payment for {account.uid}: {package.id} (${package.price}), "
                f"card ending {payment.cardNumber[-4:]}")
    await asyncio.sleep(processing_delay)
    return await gateway.purchase_credits(account.uid, package.credits, token=account.id_token)
