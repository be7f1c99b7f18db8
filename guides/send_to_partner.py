"""Send an inventory order to a partner and wait for them to start it.

The partner answers asynchronously, possibly hours later, by reporting the
outcome of the ``await-order-start`` step. Run this file to see both a
successful hand-off and one the partner refuses.
"""

import asyncio
from typing import Any, Dict, List

from pydantic import BaseModel

from relayflow import (
    Orchestrator,
    StepFailed,
    define_step,
    define_workflow,
    get_transaction_status,
    report_step_outcome,
    run_workflow,
)
from relayflow.collaborators import DATA_MUTATION, NOTIFICATIONS


class PartnerOrder(BaseModel):
    partner_id: str
    sku: str
    quantity: int


class InventoryService:
    """Stand-in for the platform's entity service."""

    def __init__(self) -> None:
        self.stock: Dict[str, int] = {"SKU-1": 40}

    async def apply(self, operation: Dict[str, Any]) -> Any:
        prior = {"sku": operation["sku"], "stock": self.stock[operation["sku"]]}
        if prior["stock"] < operation["quantity"]:
            raise StepFailed("insufficient stock", retryable=False)
        self.stock[operation["sku"]] -= operation["quantity"]
        return prior

    async def revert(self, prior: Any) -> None:
        self.stock[prior["sku"]] = prior["stock"]


class ConsoleNotifier:
    def __init__(self) -> None:
        self.sent: List[str] = []

    async def send(self, to: str, template: str, data: Dict[str, Any]) -> Dict[str, Any]:
        self.sent.append(f"{template} -> {to}")
        print(f"📨 {template} -> {to}: {data}")
        return {"id": f"msg-{len(self.sent)}"}


async def reserve_stock(order, ctx):
    return await ctx.service(DATA_MUTATION).apply(
        {"sku": order["sku"], "quantity": order["quantity"]}
    )


async def release_stock(prior, ctx):
    await ctx.service(DATA_MUTATION).revert(prior)


async def notify_partner(order, ctx):
    return await ctx.service(NOTIFICATIONS).send(
        order["partner_id"], "new-order", {"sku": order["sku"], "quantity": order["quantity"]}
    )


async def await_order_start(order, ctx):
    # completed by the partner through report_step_outcome
    return None


async def confirm(started, ctx):
    return await ctx.service(NOTIFICATIONS).send(
        "ops@example.com", "order-started", started or {}
    )


reserve = define_step(
    "reserve-stock", reserve_stock, compensate=release_stock, requires=[DATA_MUTATION]
)
notify = define_step("notify-partner", notify_partner, max_retries=2, requires=[NOTIFICATIONS])
await_start = define_step(
    "await-order-start", await_order_start, is_async=True, timeout_seconds=24 * 3600
)
confirm_start = define_step("confirm-start", confirm, requires=[NOTIFICATIONS])


def build(b):
    b.step(reserve)
    b.step(notify)
    b.step(await_start)
    b.step(confirm_start, input="await-order-start")
    return lambda out: {"reserved": out["reserve-stock"], "confirmation": out["confirm-start"]}


send_to_partner = define_workflow("send-to-partner", build, input_model=PartnerOrder)


async def main():
    inventory = InventoryService()
    orchestrator = Orchestrator(
        services={DATA_MUTATION: inventory, NOTIFICATIONS: ConsoleNotifier()}
    )
    order = {"partner_id": "partner@example.com", "sku": "SKU-1", "quantity": 5}

    run = await run_workflow(send_to_partner, order, orchestrator=orchestrator)
    print(f"⏸️  {run.transaction_id}: {run.state.value} (stock now {inventory.stock['SKU-1']})")

    signal = await report_step_outcome(
        run.transaction_id,
        "await-order-start",
        "success",
        {"started_by": "partner"},
        orchestrator=orchestrator,
    )
    print(f"✅ {run.transaction_id}: {signal.state.value}")

    refused = await run_workflow(send_to_partner, order, orchestrator=orchestrator)
    await report_step_outcome(
        refused.transaction_id,
        "await-order-start",
        "failure",
        {"error": "partner declined"},
        orchestrator=orchestrator,
    )
    status = await get_transaction_status(refused.transaction_id, orchestrator=orchestrator)
    print(f"↩️  {refused.transaction_id}: {status.state.value} ({status.error.message})")
    print(f"📦 Stock after refusal: {inventory.stock['SKU-1']}")


if __name__ == "__main__":
    asyncio.run(main())
