"""HelloDurable: say hello to a list of cities through an orchestration.

``HelloDurable`` fans out one activity per city and waits for all of them;
``HelloDurableSequential`` awaits each city in turn. Both return one
``OutputDto`` per city in input order.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List

from pydantic import BaseModel, ConfigDict, Field

from ..context import ActivityContext, OrchestrationContext
from ..registry import FunctionRegistry

logger = logging.getLogger(__name__)

ORCHESTRATOR_NAME = "HelloDurable"
SEQUENTIAL_ORCHESTRATOR_NAME = "HelloDurableSequential"
ACTIVITY_NAME = "HelloDurable_Hello"
SIMPLE_ACTIVITY_NAME = "HelloDurable_HelloSimple"

DEFAULT_CITIES = ("Tokyo", "Seattle", "London")

registry = FunctionRegistry()


class InputDto(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    city_name: str = Field(alias="cityName", min_length=1)


class OutputDto(BaseModel):
    id: str
    name: str
    message: str


def _inputs(context: OrchestrationContext) -> List[InputDto]:
    cities = context.get_input()
    if cities is None:
        cities = DEFAULT_CITIES
    elif not isinstance(cities, list):
        raise TypeError(
            f"{context.name} expects a list of city names, got {type(cities).__name__}"
        )
    return [InputDto(city_name=city) for city in cities]


@registry.orchestrator(ORCHESTRATOR_NAME)
def hello_durable(context: OrchestrationContext):
    if not context.is_replaying:
        logger.info(f"In orchestration {ORCHESTRATOR_NAME} for instance_id={context.instance_id}")

    tasks = []
    for input in _inputs(context):
        if not context.is_replaying:
            logger.info(f"call Activity:{ACTIVITY_NAME} with input={input.model_dump(by_alias=True)}")
        tasks.append(context.call_activity(ACTIVITY_NAME, input))

    outputs = yield context.task_all(tasks)
    return outputs


@registry.orchestrator(SEQUENTIAL_ORCHESTRATOR_NAME)
def hello_durable_sequential(context: OrchestrationContext):
    outputs = []
    for input in _inputs(context):
        if not context.is_replaying:
            logger.info(f"call Activity:{SIMPLE_ACTIVITY_NAME} with input={input.model_dump(by_alias=True)}")
        outputs.append((yield context.call_activity(SIMPLE_ACTIVITY_NAME, input)))
    return outputs


def _greet(id: str, input: InputDto) -> OutputDto:
    logger.info(f"Saying hello to {input.model_dump(by_alias=True)}.")
    return OutputDto(id=id, name=input.city_name, message=f"Hello from {input.city_name}!")


@registry.activity(ACTIVITY_NAME)
def say_hello(context: ActivityContext) -> OutputDto:
    # The wall-clock read makes ``id`` differ if the activity is ever re-run.
    timestamp = datetime.now(timezone.utc).isoformat()
    return _greet(f"{context.instance_id}_{timestamp}", context.get_input(InputDto))


@registry.activity(SIMPLE_ACTIVITY_NAME)
def say_hello_simple(context: ActivityContext) -> OutputDto:
    return _greet(context.instance_id, context.get_input(InputDto))
