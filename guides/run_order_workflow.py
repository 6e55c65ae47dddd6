"""Example running the order workflow from Python with SQLite persistence."""

import asyncio
import logging
from pathlib import Path

from agentflow import AgentflowConfig, WorkflowEngine, get_state_store, load_definition

from order_tasks import executor

HERE = Path(__file__).parent


async def main():
    """Run one order and print its report."""
    logging.basicConfig(level=logging.INFO)

    config = AgentflowConfig(database_url=f"sqlite://{HERE / 'orders.db'}")
    engine = WorkflowEngine(executor, store=get_state_store(config=config), config=config)

    definition = load_definition(HERE / "order_workflow.yaml")
    instance = await engine.run(definition, {"order_id": 42, "express": True})

    print(f"Instance {instance.id} finished as {instance.status.value}")
    print(f"Outputs: {instance.outputs}")

    report = await engine.report(instance.id)
    for step in report.steps:
        print(f"  {step.step_id:<24} {step.status:<10} attempts={step.attempts}")

    await engine.shutdown()


if __name__ == "__main__":
    asyncio.run(main())
