#!/usr/bin/env python3
"""Concurrent per-instance probe dispatch.

Runs one probe per instance in parallel over the shared channel and returns
the results sorted by instance label, whatever order they finished in.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, List, Sequence, Tuple

from yardcheck.config.config import Instance
from yardcheck.remote.base import RemoteClient


logger = logging.getLogger(__name__)

Probe = Callable[[RemoteClient, Instance], Tuple[bool, str]]


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of one probe on one instance.

    Attributes:
        label: Instance label
        ok: Whether the probe passed
        message: Failure detail (empty on success)
    """

    label: str
    ok: bool
    message: str = ""


def _run_probe(
    client: RemoteClient,
    inst: Instance,
    probe: Probe,
    delay: float,
    sleep: Callable[[float], None],
) -> ProbeResult:
    if delay > 0:
        sleep(delay)
    ok, message = probe(client, inst)
    return ProbeResult(inst.label, bool(ok), message or "")


def dispatch(
    client: RemoteClient,
    instances: Sequence[Instance],
    probe: Probe,
    stagger: float = 0.0,
    sleep: Callable[[float], None] = time.sleep,
) -> List[ProbeResult]:
    """Run ``probe`` concurrently for every instance.

    Waits for every probe; one failing probe never cancels the others. A
    probe that raises produces a failed result carrying the exception text.

    Args:
        client: Shared remote client; each probe opens its own sessions
        instances: Instances to probe
        probe: Callable returning (ok, message)
        stagger: Probe ``i`` starts after ``i * stagger`` seconds
        sleep: Sleep function used for the stagger

    Returns:
        Exactly one ProbeResult per instance, sorted by label
    """
    if not instances:
        return []

    results: List[ProbeResult] = []
    with ThreadPoolExecutor(max_workers=len(instances)) as executor:
        futures = {
            executor.submit(_run_probe, client, inst, probe, idx * stagger, sleep): inst
            for idx, inst in enumerate(instances)
        }
        for future in as_completed(futures):
            inst = futures[future]
            try:
                results.append(future.result())
            except Exception as exc:
                logger.error(f"  [{inst.label}] Probe raised: {exc}")
                results.append(ProbeResult(inst.label, False, f"probe raised: {exc}"))

    results.sort(key=lambda r: r.label)
    for result in results:
        if not result.ok:
            logger.debug(f"  [{result.label}] {result.message}")
    return results


def all_ok(results: Sequence[ProbeResult]) -> bool:
    """True when every result passed."""
    return all(r.ok for r in results)


def failure_summary(results: Sequence[ProbeResult]) -> str:
    """Join the messages of failed results as ``[label] message``."""
    return " | ".join(f"[{r.label}] {r.message}" for r in results if not r.ok)
