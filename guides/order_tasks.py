"""Task handlers for ``order_workflow.yaml``.

Run with::

    agentflow workflow run guides/order_workflow.yaml -i order_id=42 \
        --executor guides.order_tasks:executor
"""

import asyncio
import logging
import uuid

from agentflow import LocalTaskExecutor

logger = logging.getLogger(__name__)

PRICES = {"book": 12.5, "pen": 1.2}

executor = LocalTaskExecutor()


@executor.capability("inventory", action="reserve")
async def reserve(order_id: int, items: list) -> dict:
    await asyncio.sleep(0.1)
    logger.info(f"Reserved {len(items)} item(s) for order {order_id}")
    return {"reservation": f"res-{order_id}"}


@executor.capability("inventory", action="release")
async def release(order_id: int) -> dict:
    logger.info(f"Released reservation for order {order_id}")
    return {"released": True}


@executor.capability("billing", action="price")
def price(sku: str, qty: int) -> float:
    return PRICES.get(sku, 0.0) * qty


@executor.capability("billing", action="charge")
async def charge(order_id: int, prices: list) -> dict:
    amount = round(sum(prices), 2)
    await asyncio.sleep(0.1)
    return {"payment_id": str(uuid.uuid4()), "amount": amount}


@executor.capability("billing", action="refund")
async def refund(payment: dict) -> dict:
    logger.info(f"Refunded payment {payment['payment_id']}")
    return {"refunded": payment["amount"]}


@executor.capability("shipping")
async def ship(order_id: int) -> dict:
    return {"tracking": f"TRK-{order_id:06d}"}


@executor.capability("notify")
async def notify(message: str) -> dict:
    logger.info(message)
    return {"sent": True}
