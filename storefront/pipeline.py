"""
Isolated side-effect steps.

Each step runs regardless of how the previous ones ended; failures are
captured as outcomes and reported in a single summary line. Plain callables
do blocking database work, so they run in a worker thread and keep the event
loop free for room delivery.
"""
import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Union

logger = logging.getLogger(__name__)

StepFn = Callable[[], Union[Any, Awaitable[Any]]]


@dataclass
class Step:
    name: str
    run: StepFn


@dataclass
class StepOutcome:
    name: str
    ok: bool
    result: Any = None
    error: Optional[str] = None


async def _call(run: StepFn) -> Any:
    if inspect.iscoroutinefunction(run):
        return await run()
    result = await asyncio.to_thread(run)
    if inspect.isawaitable(result):
        result = await result
    return result


async def run_steps(steps: List[Step], context: str) -> List[StepOutcome]:
    outcomes = []
    for step in steps:
        try:
            result = await _call(step.run)
            outcomes.append(StepOutcome(step.name, True, result=result))
        except Exception as exc:
            logger.exception("Step %s failed for %s", step.name, context)
            outcomes.append(StepOutcome(step.name, False, error=f"{type(exc).__name__}: {exc}"))

    failed = [o for o in outcomes if not o.ok]
    summary = ", ".join(f"{o.name}={'ok' if o.ok else 'failed'}" for o in outcomes)
    if failed:
        logger.warning("Side effects for %s finished with %d failure(s): %s", context, len(failed), summary)
    else:
        logger.info("Side effects for %s finished: %s", context, summary)
    return outcomes
