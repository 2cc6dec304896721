"""Poll asynchronous cloud resources until they reach a target state."""

from __future__ import annotations

import threading
from typing import Callable, Iterable, Optional

from cloud2scw.exceptions import ResourceFaultedError, ResourceTimeoutError, WaitCancelledError
from cloud2scw.utils.logging import get_logger

logger = get_logger(__name__)


def wait_for_state(
    fetch_state: Callable[[], str],
    target_state: str,
    *,
    poll_interval: float,
    max_attempts: int,
    fault_states: Iterable[str] = (),
    cancel_event: Optional[threading.Event] = None,
    resource: str = "",
) -> str:
    """Poll ``fetch_state`` until it returns ``target_state``.

    Args:
        fetch_state: Returns the current state of the resource
        target_state: State to wait for
        poll_interval: Seconds between polls
        max_attempts: Maximum number of polls
        fault_states: States that end the wait with an error immediately
        cancel_event: Interrupts the wait, including an in-flight sleep
        resource: Label used in logs and errors

    Returns:
        The target state

    Raises:
        ResourceFaultedError: A fault state was observed
        ResourceTimeoutError: The target was not reached within max_attempts
        WaitCancelledError: cancel_event was set
    """
    faults = set(fault_states)
    label = resource or "resource"
    cancel_event = cancel_event or threading.Event()
    state = None

    for attempt in range(1, max_attempts + 1):
        if cancel_event.is_set():
            raise WaitCancelledError(f"Wait for {label} cancelled", resource, state)

        state = fetch_state()
        if state == target_state:
            logger.debug(f"{label} reached '{target_state}' after {attempt} poll(s)")
            return state
        if state in faults:
            raise ResourceFaultedError(
                f"{label} entered fault state '{state}' while waiting for '{target_state}'",
                resource, state,
            )

        logger.debug(f"{label}: {state} (waiting for {target_state}, {attempt}/{max_attempts})")
        if attempt < max_attempts and cancel_event.wait(poll_interval):
            raise WaitCancelledError(f"Wait for {label} cancelled", resource, state)

    raise ResourceTimeoutError(
        f"{label} did not reach '{target_state}' after {max_attempts} polls "
        f"(last state: {state})",
        resource, state,
    )
