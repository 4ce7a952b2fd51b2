"""Run HelloDurable in-process and a custom orchestrator that waits for approval."""

import asyncio

from durafaas import FunctionRegistry, create_scheduler
from durafaas.functions import hello_registry

registry = FunctionRegistry().merge(hello_registry)


@registry.activity("Ship")
def ship(context):
    return f"shipped order {context.get_input()}"


@registry.orchestrator("ApproveAndShip")
def approve_and_ship(context):
    order_id = context.get_input()
    approved = yield context.wait_for_external_event("Approved")
    if not approved:
        return "rejected"
    result = yield context.call_activity("Ship", order_id)
    return result


async def main():
    async with create_scheduler(registry=registry) as scheduler:
        # Fan-out/fan-in over the default cities
        instance_id = await scheduler.start_new("HelloDurable", instance_id="id-1")
        hello = await scheduler.wait_for_completion(instance_id)
        print(f"✅ {hello.name}: {hello.status.value}")
        for greeting in hello.output:
            print(f"   {greeting['id']}: {greeting['message']}")

        # External event
        await scheduler.start_new("ApproveAndShip", instance_id="order-42", input=42)
        await scheduler.raise_event("order-42", "Approved", True)
        order = await scheduler.wait_for_completion("order-42")
        print(f"📦 {order.name}: {order.output}")


if __name__ == "__main__":
    asyncio.run(main())
